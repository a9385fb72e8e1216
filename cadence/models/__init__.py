from cadence.models.base import Base
from cadence.models.delivery_attempt import AttemptStatus, DeliveryAttempt
from cadence.models.job_run import JobRun
from cadence.models.metrics import MetricsSnapshot
from cadence.models.recipient import AssociatedPerson, Recipient
from cadence.models.subscription import SeriesKind, Subscription

__all__ = [
    "Base",
    "Recipient",
    "AssociatedPerson",
    "Subscription",
    "SeriesKind",
    "DeliveryAttempt",
    "AttemptStatus",
    "MetricsSnapshot",
    "JobRun",
]
