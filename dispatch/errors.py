"""
Purpose: Failure taxonomy of the broadcast protocol.
What it does:
Every failure inside respond/cancel is folded into one of these before it
reaches the caller. `code` is the stable string clients switch on.
"""


class BroadcastError(Exception):
    """Base class for protocol failures."""
    code = "broadcast_error"
    default_message = "Broadcast error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.default_message)


class BroadcastNotFound(BroadcastError):
    code = "not_found"
    default_message = "Broadcast not found"


class AlreadyResolved(BroadcastError):
    """The broadcast is terminal. Never retried."""
    code = "already_resolved"
    default_message = "This order is no longer available"


class RaceLost(AlreadyResolved):
    """A concurrent accept committed first. Reported to the caller as AlreadyResolved."""
    default_message = "This order has already been accepted by another provider"


class OfferExpired(BroadcastError):
    """The offer or the whole broadcast ran past its deadline."""
    code = "expired"
    default_message = "This order request has expired"


class NotOffered(BroadcastError):
    code = "not_offered"
    default_message = "This order was not offered to you"


class NotRequester(BroadcastError):
    code = "forbidden"
    default_message = "Only the requester can cancel this broadcast"


class InvalidDecision(BroadcastError):
    code = "invalid_decision"
    default_message = "Invalid response type"


class NoCandidatesFound(BroadcastError):
    """Selection returned nobody for a round. Triggers escalation, fatal only when rounds are exhausted."""
    code = "no_candidates"
    default_message = "No providers available in your area"

    def __init__(self, message: str = "", round_number: int = 0, radius_km: float = 0.0):
        super().__init__(message)
        self.round_number = round_number
        self.radius_km = radius_km


class ResourceCreationFailure(BroadcastError):
    """The downstream order/assignment could not be created. The broadcast stays pending."""
    code = "resource_creation_failed"
    default_message = "Failed to create order"


class DuplicateResource(BroadcastError):
    """Raised by a resource creator when the broadcast already owns a resource."""
    code = "already_resolved"
    default_message = "A resource already exists for this broadcast"


class TransportFailure(BroadcastError):
    """Push transport failed. Logged and swallowed by the notifier."""
    code = "transport_failure"
    default_message = "Push notification could not be delivered"
