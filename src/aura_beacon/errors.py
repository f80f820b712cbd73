"""
Beacon error taxonomy.

TransportError   link problems; retried with backoff, LinkDown is fatal
ProtocolError    malformed or unknown messages; declined per message
NegotiationError invalid or out-of-policy terms; declined, not fatal
CommitError      order commit failures; Transient is retried, Permanent fails
"""


class BeaconError(Exception):
    """Base exception for all Beacon errors."""

    code = "BEACON_ERROR"

    def __init__(self, message: str, correlation_id: str | None = None):
        super().__init__(message)
        self.correlation_id = correlation_id


class TransportError(BeaconError):
    code = "TRANSPORT_ERROR"


class NotConnected(TransportError):
    """No session is established and the outbound queue is full."""

    code = "NOT_CONNECTED"


class LinkDown(TransportError):
    """Reconnection retry budget exhausted."""

    code = "LINK_DOWN"

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class ProtocolError(BeaconError):
    code = "PROTOCOL_ERROR"


class NegotiationError(BeaconError):
    code = "NEGOTIATION_ERROR"


class InvalidTerms(NegotiationError):
    code = "INVALID_TERMS"


class Unpriceable(NegotiationError):
    """The pricing collaborator cannot price the request."""

    code = "UNPRICEABLE"


class CommitError(BeaconError):
    code = "COMMIT_ERROR"


class TransientCommitError(CommitError):
    """Timeouts and other failures worth retrying."""

    code = "COMMIT_TRANSIENT"


class PermanentCommitError(CommitError):
    """Terms rejected, inventory gone; never retried."""

    code = "COMMIT_PERMANENT"


class RegistrationError(BeaconError):
    code = "REGISTRATION_ERROR"
