"""
Error taxonomy for the execution engine.

RateLimited is expected backpressure, never a failure. Transient gateway
errors are retried with backoff; permanent gateway errors and configuration
errors end the execution.
"""

from datetime import datetime
from typing import Optional


class SequencerError(Exception):
    """Base class for every engine error."""


class RateLimited(SequencerError):
    """The tenant's budget for this action is spent until `retry_at`."""

    def __init__(self, message: str, retry_at: Optional[datetime] = None):
        super().__init__(message)
        self.retry_at = retry_at


class GatewayError(SequencerError):
    """Raised by a messaging gateway."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientGatewayError(GatewayError):
    """Timeout, 5xx, dropped connection: safe to retry later."""


class PermanentGatewayError(GatewayError):
    """Invalid recipient, disconnected account: retrying cannot help."""

    def __init__(self, message: str, status_code: Optional[int] = None, restricted: bool = False):
        super().__init__(message, status_code)
        # The platform flagged the sending account itself
        self.restricted = restricted


class ConfigurationError(SequencerError):
    """Setup defect (missing tenant account, unknown sequence version)."""


class TenantLimitExceeded(SequencerError):
    """A tenant hard cap (campaigns, contacts, daily executions) was hit."""


class SequenceValidationError(SequencerError):
    """A sequence definition is internally inconsistent."""
