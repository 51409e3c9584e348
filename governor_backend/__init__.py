"""
Soroban governor indexer.

Scans Stellar ledgers for governor contract events, projects them into
proposal and vote aggregates, and serves the result over a read-only HTTP API.
"""

__version__ = "0.1.0"
