"""Exception hierarchy for the delivery scheduler.

Dependency failures are split into transient (worth retrying) and permanent
(retrying cannot help, e.g. an invalid recipient address). Both are converted
into recorded outcomes at the dispatch boundary and never abort a batch.
"""


class CadenceError(Exception):
    """Base exception for scheduler errors."""


class DeliveryError(CadenceError):
    """Raised when the delivery provider rejects or fails a send."""


class TransientDeliveryError(DeliveryError):
    """Provider timeout, rate limit or 5xx. Safe to retry."""


class PermanentDeliveryError(DeliveryError):
    """Provider rejected the message in a way a retry cannot fix."""


class ContentGenerationError(CadenceError):
    """Raised when the content generator fails or returns unusable content."""


class InvariantViolation(CadenceError):
    """Raised when a stored record breaks a data invariant (e.g. missing timezone)."""
