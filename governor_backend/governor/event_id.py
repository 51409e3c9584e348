"""
Event ids in the Stellar RPC `getEvents` format.

An id is a 19-digit zero-padded TOID (total order id of the operation) and a
10-digit zero-padded event index, joined by a hyphen. Zero padding makes the
lexicographic order of ids equal to emission order.
"""

from __future__ import annotations

import re

LEDGER_BITS = 32
TX_BITS = 20
OP_BITS = 12

_EVENT_ID_RE = re.compile(r"([0-9]{19})-([0-9]{10})")


def toid(ledger_seq: int, tx_index: int, op_index: int) -> int:
    if not 0 <= ledger_seq < (1 << (LEDGER_BITS - 1)):
        raise ValueError(f"ledger_seq out of range: {ledger_seq}")
    if not 0 <= tx_index < (1 << TX_BITS):
        raise ValueError(f"tx_index out of range: {tx_index}")
    if not 0 <= op_index < (1 << OP_BITS):
        raise ValueError(f"op_index out of range: {op_index}")
    return (ledger_seq << LEDGER_BITS) | (tx_index << OP_BITS) | op_index


def encode_event_id(op_toid: int, event_index: int) -> str:
    if op_toid < 0 or op_toid >= 10**19:
        raise ValueError(f"toid out of range: {op_toid}")
    if event_index < 0 or event_index >= 10**10:
        raise ValueError(f"event_index out of range: {event_index}")
    return "%019d-%010d" % (op_toid, event_index)


def decode_event_id(event_id: str) -> tuple[int, int]:
    m = _EVENT_ID_RE.fullmatch(event_id or "")
    if not m:
        raise ValueError(f"malformed event id: {event_id!r}")
    return int(m.group(1)), int(m.group(2))
