"""
Shared runtime plumbing (structured logging, configuration, shutdown, freshness).
"""
