"""
Security checks that are not bound to HTTP: SQL-injection detection and the audit recorder.
"""
