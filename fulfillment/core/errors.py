class FulfillmentError(Exception):
    pass


class NotFound(FulfillmentError):
    pass


class InvalidState(FulfillmentError):
    pass


class IllegalTransitionError(InvalidState):
    def __init__(self, kind: str, from_status: str, to_status: str, allowed: list[str]):
        self.kind = kind
        self.from_status = from_status
        self.to_status = to_status
        self.allowed = allowed
        super().__init__(
            f"Invalid transition from {from_status} to {to_status} for {kind} item. "
            f"Allowed transitions: {', '.join(allowed) or 'none'}"
        )


class InvalidRequest(FulfillmentError):
    pass


class SlotNotAvailable(FulfillmentError):
    pass


class NotAllowed(FulfillmentError):
    pass


class CancellationWindowViolation(NotAllowed):
    pass


class DispatchFailure(FulfillmentError):
    """Transient handler error; the dispatcher schedules a retry."""


class PermanentFailure(FulfillmentError):
    """Handler error that must go straight to the dead-letter store."""
