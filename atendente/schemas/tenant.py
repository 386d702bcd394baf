from datetime import timedelta
from typing import Annotated, List, Optional, Union

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator

Price = Union[float, int, str, None]

DELAY_UNITS = {
    "minutes": "minutes",
    "minutos": "minutes",
    "hours": "hours",
    "horas": "hours",
    "days": "days",
    "dias": "days",
}


def _coerce_id(value):
    if value is None:
        return value
    return str(value).strip()


EntityId = Annotated[str, BeforeValidator(_coerce_id)]
OptionalId = Annotated[Optional[str], BeforeValidator(_coerce_id)]


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", protected_namespaces=())


class VariantEntry(_CamelModel):
    id: EntityId
    name: str = ""
    color: Optional[str] = None
    size: Optional[str] = None
    price: Price = None
    image: Optional[str] = None


class ProductEntry(_CamelModel):
    id: EntityId
    name: str
    price: Price = None
    active: bool = True
    company_id: OptionalId = Field(default=None, validation_alias=AliasChoices("companyId", "company_id"))
    type: str = "product"  # product, service
    description: Optional[str] = None
    unit: Optional[str] = None
    image: Optional[str] = None
    pdf: Optional[str] = None
    payment_link: Optional[str] = Field(default=None, validation_alias=AliasChoices("paymentLink", "payment_link"))
    price_hidden: bool = Field(default=False, validation_alias=AliasChoices("priceHidden", "price_hidden"))
    variant_items: List[VariantEntry] = Field(
        default_factory=list,
        validation_alias=AliasChoices("variantItems", "variant_items"),
    )

    @field_validator("active", mode="before")
    @classmethod
    def _missing_active_means_active(cls, value):
        # The catalog editor only writes `active: false` explicitly.
        return True if value is None else value

    @field_validator("price_hidden", mode="before")
    @classmethod
    def _missing_hidden_means_visible(cls, value):
        return False if value is None else value

    @field_validator("variant_items", mode="before")
    @classmethod
    def _none_as_empty(cls, value):
        return value or []

    @property
    def is_service(self) -> bool:
        return (self.type or "").strip().lower() in {"service", "servico", "serviço"}


class FollowUpAttempt(_CamelModel):
    unit: str = "hours"
    value: int = 1
    message: Optional[str] = None

    @property
    def delay(self) -> timedelta:
        unit = DELAY_UNITS.get((self.unit or "").strip().lower(), "hours")
        return timedelta(**{unit: max(self.value, 0)})


class FollowUpConfig(_CamelModel):
    enabled: bool = False
    attempts: List[FollowUpAttempt] = Field(default_factory=list)


class VoiceConfig(_CamelModel):
    enabled: bool = Field(default=False, validation_alias=AliasChoices("enabled", "voiceEnabled", "voice_enabled"))
    provider_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("providerKey", "provider_key", "elevenLabsKey"),
    )
    voice_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("voiceId", "voice_id", "elevenLabsVoiceId"),
    )
    response_type: str = Field(
        default="audio_only",
        validation_alias=AliasChoices("responseType", "response_type"),
    )  # audio_only, percentage
    response_percentage: float = Field(
        default=50,
        validation_alias=AliasChoices("responsePercentage", "response_percentage"),
    )


class Specialist(_CamelModel):
    id: EntityId
    name: str = ""
    calendar_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("calendarId", "calendar_id"))


class AppointmentType(_CamelModel):
    id: EntityId
    name: str = ""
    duration_minutes: int = Field(
        default=60,
        validation_alias=AliasChoices("duration", "durationMinutes", "duration_minutes"),
    )


class SchedulingConfig(_CamelModel):
    timezone: str = "America/Sao_Paulo"
    default_duration_minutes: int = Field(
        default=60,
        validation_alias=AliasChoices("defaultDuration", "defaultDurationMinutes", "default_duration_minutes"),
    )
    specialists: List[Specialist] = Field(default_factory=list)
    appointment_types: List[AppointmentType] = Field(
        default_factory=list,
        validation_alias=AliasChoices("appointmentTypes", "appointment_types"),
    )


class CalendarConfig(_CamelModel):
    refresh_token: Optional[str] = Field(default=None, validation_alias=AliasChoices("refreshToken", "refresh_token"))
    calendar_id: str = Field(
        default="primary",
        validation_alias=AliasChoices("primaryCalendarId", "calendarId", "calendar_id"),
    )


class TenantConfig(_CamelModel):
    """Read-only view of one company's agent configuration."""

    company_id: EntityId = Field(validation_alias=AliasChoices("companyId", "company_id"))
    identity: OptionalId = None
    connection_id: OptionalId = Field(default=None, validation_alias=AliasChoices("connectionId", "connection_id"))
    promp_uuid: Optional[str] = Field(default=None, validation_alias=AliasChoices("prompUuid", "promp_uuid"))
    promp_token: Optional[str] = Field(default=None, validation_alias=AliasChoices("prompToken", "promp_token"))
    openai_key: Optional[str] = Field(default=None, validation_alias=AliasChoices("openaiKey", "openai_key"))
    system_prompt: Optional[str] = Field(default=None, validation_alias=AliasChoices("systemPrompt", "system_prompt"))
    model_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("model", "modelName", "model_name"))
    knowledge_base: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("knowledgeBase", "knowledge_base"),
    )
    products: List[ProductEntry] = Field(default_factory=list)
    follow_up: FollowUpConfig = Field(
        default_factory=FollowUpConfig,
        validation_alias=AliasChoices("followUpConfig", "follow_up"),
    )
    voice: VoiceConfig = Field(default_factory=VoiceConfig)
    scheduling: SchedulingConfig = Field(default_factory=SchedulingConfig)
    calendar: CalendarConfig = Field(default_factory=CalendarConfig)

    @field_validator("connection_id", "identity", "promp_token", "promp_uuid", "openai_key", mode="after")
    @classmethod
    def _blank_as_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value.strip() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _products_default_to_owner(self):
        # entries saved without an owner belong to the config that holds them
        for product in self.products:
            if product.company_id is None:
                product.company_id = self.company_id
        return self
