"""
Ledger input types and the Stellar XDR they are built from.

Envelopes and contract events arrive as base64 XDR and are decoded with the
stellar-sdk generated types. Every decode failure, whatever the SDK raised,
surfaces as `XdrDecodeError` (a ValueError).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence, TypeVar

from stellar_sdk.xdr import (
    ContractEvent,
    ContractEventType,
    DiagnosticEvent,
    EnvelopeType,
    OperationType,
    TransactionEnvelope,
)

INVOKE_HOST_FUNCTION = int(OperationType.INVOKE_HOST_FUNCTION)

T = TypeVar("T")


class XdrDecodeError(ValueError):
    """A base64 XDR payload did not decode into the expected type."""


def decode_xdr(xdr_type: type[T], raw: str) -> T:
    try:
        return xdr_type.from_xdr(raw)  # type: ignore[attr-defined]
    except Exception as e:
        raise XdrDecodeError(f"invalid {xdr_type.__name__} XDR: {e}") from e


@dataclass(frozen=True, slots=True)
class EnvelopeSummary:
    envelope_type: int
    operation_count: int
    first_operation_type: Optional[int]


def summarize_envelope(envelope_xdr: str) -> EnvelopeSummary:
    """
    Operation count and first operation type of a transaction envelope.

    Fee-bump envelopes report their inner transaction.
    """
    env = decode_xdr(TransactionEnvelope, envelope_xdr)
    if env.type == EnvelopeType.ENVELOPE_TYPE_TX and env.v1 is not None:
        operations = env.v1.tx.operations
    elif env.type == EnvelopeType.ENVELOPE_TYPE_TX_FEE_BUMP and env.fee_bump is not None:
        operations = env.fee_bump.tx.inner_tx.v1.tx.operations
    elif env.type == EnvelopeType.ENVELOPE_TYPE_TX_V0 and env.v0 is not None:
        operations = env.v0.tx.operations
    else:
        raise XdrDecodeError(f"unsupported envelope type {env.type!r}")
    first = int(operations[0].body.type) if operations else None
    return EnvelopeSummary(envelope_type=int(env.type), operation_count=len(operations), first_operation_type=first)


@dataclass(frozen=True, slots=True)
class LedgerTransaction:
    """
    One transaction of a closed ledger, as delivered by the ledger source.

    `index` is the 1-based application order within the ledger. Contract events
    come either from `contract_events_xdr` (base64 `ContractEvent`s) or, for
    sources that only expose diagnostics, from `diagnostic_events_xdr`
    (base64 `DiagnosticEvent`s, filtered to contract events of successful calls).
    """

    hash: str
    index: int
    successful: bool
    first_operation_type: Optional[int]
    operation_count: int = 1
    contract_events_xdr: Optional[Sequence[str]] = None
    diagnostic_events_xdr: Optional[Sequence[str]] = None

    @property
    def is_invoke_host_function(self) -> bool:
        return self.first_operation_type == INVOKE_HOST_FUNCTION

    def contract_events(self) -> list[tuple[ContractEvent, str]]:
        """
        Decoded contract events in emission order, each with its base64 form.

        Raises XdrDecodeError when any event fails to decode.
        """
        if self.contract_events_xdr is not None:
            return [(decode_xdr(ContractEvent, raw), raw) for raw in self.contract_events_xdr]
        out: list[tuple[ContractEvent, str]] = []
        for raw in self.diagnostic_events_xdr or ():
            diag = decode_xdr(DiagnosticEvent, raw)
            if diag.in_successful_contract_call and diag.event.type == ContractEventType.CONTRACT:
                out.append((diag.event, diag.event.to_xdr()))
        return out

    @classmethod
    def from_envelope(
        cls,
        *,
        hash: str,
        index: int,
        successful: bool,
        envelope_xdr: str,
        contract_events_xdr: Optional[Sequence[str]] = None,
        diagnostic_events_xdr: Optional[Sequence[str]] = None,
    ) -> "LedgerTransaction":
        """Raises XdrDecodeError when the envelope does not decode."""
        summary = summarize_envelope(envelope_xdr)
        return cls(
            hash=hash,
            index=index,
            successful=successful,
            first_operation_type=summary.first_operation_type,
            operation_count=summary.operation_count,
            contract_events_xdr=tuple(contract_events_xdr) if contract_events_xdr is not None else None,
            diagnostic_events_xdr=tuple(diagnostic_events_xdr) if diagnostic_events_xdr is not None else None,
        )


@dataclass(frozen=True, slots=True)
class Ledger:
    sequence: int
    close_time: int
    transactions: Sequence[LedgerTransaction] = field(default_factory=tuple)
