"""
Read-only HTTP API over the indexed governor state.
"""
