"""
Shared helpers: failure taxonomy, payload traversal, sanitization, logging.
"""
