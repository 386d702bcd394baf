from atendente.schemas.tenant import (
    AppointmentType,
    CalendarConfig,
    FollowUpAttempt,
    FollowUpConfig,
    ProductEntry,
    SchedulingConfig,
    Specialist,
    TenantConfig,
    VariantEntry,
    VoiceConfig,
)
from atendente.schemas.webhook import WebhookResponse

__all__ = [
    "AppointmentType",
    "CalendarConfig",
    "FollowUpAttempt",
    "FollowUpConfig",
    "ProductEntry",
    "SchedulingConfig",
    "Specialist",
    "TenantConfig",
    "VariantEntry",
    "VoiceConfig",
    "WebhookResponse",
]
