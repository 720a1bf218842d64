from app.models.scheduling import (
    ActivityLog,
    Booking,
    Coach,
    Enrollment,
    Learner,
    PaymentRecord,
    ScheduledSession,
    SchedulingQueueItem,
    SessionChangeRequest,
)

__all__ = [
    "ActivityLog",
    "Booking",
    "Coach",
    "Enrollment",
    "Learner",
    "PaymentRecord",
    "ScheduledSession",
    "SchedulingQueueItem",
    "SessionChangeRequest",
]
