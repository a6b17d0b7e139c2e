"""Custom exceptions for the 3DS authentication client."""


class ThreeDSError(Exception):
    """Base exception for 3DS client errors."""
    pass


class ValidationError(ThreeDSError):
    """Caller input rejected before contacting the 3DS Server."""
    pass


class RemoteError(ThreeDSError):
    """Transport or server-reported failure from the 3DS Server."""
    pass


class ProtocolError(ThreeDSError):
    """Internal contract violation; fatal to the current attempt."""
    pass


class MalformedResponseError(RemoteError, ProtocolError):
    """3DS Server response is missing required fields or is not JSON."""
    pass


class AuthenticationDeclinedError(ThreeDSError):
    """Authentication finished with a failure status (transStatus N, R or U)."""

    def __init__(self, outcome):
        super().__init__(outcome.message)
        self.outcome = outcome


class ConfigurationError(ThreeDSError):
    """Configuration error."""
    pass


class RelayError(ThreeDSError):
    """Error related to a relayed frame message."""
    pass


class InvalidSignatureError(RelayError):
    """Invalid HMAC signature."""
    pass


class TimestampTooOldError(RelayError):
    """Timestamp outside acceptable window."""
    pass
