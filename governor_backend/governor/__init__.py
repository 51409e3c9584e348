"""
Governor domain: typed contract events, proposal/vote aggregates and tally arithmetic.

Everything here is deterministic and free of I/O.
"""
