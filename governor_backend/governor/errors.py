from __future__ import annotations


class GovernorError(Exception):
    """Base class for indexer domain errors."""


class FormatError(GovernorError):
    """
    The contract event is not a governor event at all (wrong kind, too few topics,
    unknown event type). Expected and frequent; callers skip it silently.
    """


class ParsingError(GovernorError):
    """A recognised governor event carried a field that failed to decode."""


class ApplicationError(GovernorError):
    """A decoded event violates a state machine precondition."""


class StoreError(GovernorError):
    """The persistence layer failed; the original driver error is chained."""
