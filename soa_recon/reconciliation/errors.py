"""
Error taxonomy for the SOA reconciliation engine.

All engine errors derive from ReconciliationError so hosts can catch the
whole family. They are raised unmodified to the caller; the engine never
swallows them.
"""


class ReconciliationError(Exception):
    """Base exception for SOA reconciliation errors"""
    pass


class ValidationError(ReconciliationError):
    """Missing or malformed required input (caller-fixable, never retried)"""
    pass


class NotFoundError(ReconciliationError):
    """Referenced record does not exist"""
    pass


class ConflictError(ReconciliationError):
    """Invariant violation: duplicate active match, duplicate sign-off"""
    pass


class InvalidStateError(ReconciliationError):
    """Operation is illegal for the record's current status"""
    pass


class PreconditionError(ReconciliationError):
    """Sign-off gating failed"""
    pass


class NoCandidateError(ReconciliationError):
    """Matcher was given an empty candidate set"""
    pass
