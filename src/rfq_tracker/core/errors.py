"""Exception types for the RFQ reply tracker.

Messages raised with these types should say what failed, where it failed,
why, and how to fix it. Most of them never reach the user: the reconciliation
engine logs gateway and persistence failures and carries on with the next
tick. The only error surfaced to a person is BatchSendError, raised when the
original batch could not be sent at all.
"""


class RfqTrackerError(Exception):
    """Base exception for all RFQ reply tracker errors."""

    pass


class ConfigValidationError(RfqTrackerError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(RfqTrackerError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class AuthenticationError(RfqTrackerError):
    """Raised when the MSAL device code flow fails or tokens cannot be acquired."""

    pass


class GraphAPIError(RfqTrackerError):
    """Raised when Microsoft Graph returns an error after retries are exhausted.

    Attributes:
        status_code: HTTP status code from the API
        error_code: Error code from the Graph response body (if available)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class RateLimitExceeded(RfqTrackerError):
    """Raised when a token bucket would need an excessive wait (>20 seconds)."""

    pass


class ConflictError(GraphAPIError):
    """Raised on 412 Precondition Failed, when a resource's ETag no longer matches.

    Callers re-read the resource and retry the write.
    """

    def __init__(self, message: str, resource_id: str | None = None):
        super().__init__(message, status_code=412, error_code="PreconditionFailed")
        self.resource_id = resource_id


class PersistenceError(RfqTrackerError):
    """Raised when the durable key-value store cannot be read or written.

    Attributes:
        key: The store key involved in the failed operation (if known)
    """

    def __init__(self, message: str, key: str | None = None):
        super().__init__(message)
        self.key = key


class BatchStateError(RfqTrackerError):
    """Raised when a batch operation is called with no batch or a stale handle.

    Example: recording a send against a handle whose batch was abandoned and
    replaced by a newer one.
    """

    pass


class BatchSendError(RfqTrackerError):
    """Raised when the RFQ batch could not be sent at all.

    Individual send failures do not raise; they are counted on the snapshot.
    This error covers "no drafts found" and "every send failed".

    Attributes:
        attempted: Number of drafts the sender tried to send
        failed: Number of drafts that failed
    """

    def __init__(self, message: str, attempted: int = 0, failed: int = 0):
        super().__init__(message)
        self.attempted = attempted
        self.failed = failed


class AutoReplyError(RfqTrackerError):
    """Raised when the demo auto-reply backend rejects or fails a request.

    Attributes:
        status_code: HTTP status code, or None for network errors and timeouts
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
