"""
Request-scoped data models: identity, request context, audit entries.
"""
