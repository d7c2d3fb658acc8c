class ReconciliationError(Exception):
    """Base class for everything the payment webhook path can raise."""


class SignatureError(ReconciliationError):
    pass


class SignatureMissing(SignatureError):
    pass


class SignatureInvalid(SignatureError):
    pass


class SecretNotConfigured(ReconciliationError):
    """No webhook signing secret is provisioned for this environment."""


class MalformedEvent(ReconciliationError):
    """Signature checked out but the body is not a usable event."""


class MalformedMetadata(ReconciliationError):
    """The event does not carry a usable order reference."""


class OrderNotFound(ReconciliationError):
    def __init__(self, lookup):
        super().__init__(f"No order matches {lookup}")
        self.lookup = lookup


class DuplicateEvent(ReconciliationError):
    def __init__(self, event_id: str):
        super().__init__(f"Event {event_id} was already processed")
        self.event_id = event_id


class StoreUnavailable(ReconciliationError):
    pass


class NotificationFailure(ReconciliationError):
    pass
