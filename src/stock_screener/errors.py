"""Exception hierarchy for the screening and trading engine."""


class EngineError(Exception):
    """Base class for all engine errors."""


class NotFoundError(EngineError):
    """A screen, run or position does not exist."""

    def __init__(self, kind: str, identifier: object):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class ValidationError(EngineError):
    """Caller input was rejected before anything was persisted."""


class PositionStateError(ValidationError):
    """An operation is not allowed in the position's current state."""


class ExternalDataError(EngineError):
    """A market data or earnings source failed for a symbol or request."""


class PersistenceConflictError(EngineError):
    """A uniqueness or state check failed in the data store."""


class BrokerError(EngineError):
    """The broker rejected or failed to acknowledge an order."""
