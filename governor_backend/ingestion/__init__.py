"""
Ingestion pipeline: ledger source -> scanner -> decoder -> applier -> store.
"""
