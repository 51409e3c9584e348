"""
Durable, idempotent storage for events, proposals, votes and checkpoints.
"""
