"""Function tools offered to the model and their executor.

Every tool answers with a JSON-serializable dict; failures become
``{"success": False, "error": ...}`` so they go back to the model instead of
escaping the tool loop.
"""

import json
from datetime import datetime, time, timedelta, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from atendente.logging_config import get_logger
from atendente.models import Appointment
from atendente.schemas.tenant import AppointmentType, ProductEntry, Specialist, TenantConfig
from atendente.services import calendar_service
from atendente.services.llm import ToolCall
from atendente.services.result import Result

logger = get_logger("tools_service")

TOOL_SCHEMA = [
    {
        "type": "function",
        "function": {
            "name": "check_availability",
            "description": "Consulta os horários ocupados da agenda em um dia específico.",
            "parameters": {
                "type": "object",
                "properties": {
                    "date": {"type": "string", "description": "Data no formato YYYY-MM-DD"},
                    "specialistId": {"type": "string", "description": "ID do profissional (opcional)"},
                    "typeId": {"type": "string", "description": "ID do tipo de atendimento (opcional)"},
                },
                "required": ["date"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "book_appointment",
            "description": "Agenda um horário na agenda da empresa.",
            "parameters": {
                "type": "object",
                "properties": {
                    "startTime": {"type": "string", "description": "Início em ISO 8601, ex: 2025-03-10T14:00:00"},
                    "customerName": {"type": "string"},
                    "customerPhone": {"type": "string"},
                    "specialistId": {"type": "string"},
                    "typeId": {"type": "string"},
                    "notes": {"type": "string"},
                },
                "required": ["startTime", "customerName", "customerPhone"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "list_available_products",
            "description": "Lista os produtos e serviços disponíveis AGORA no catálogo da empresa.",
            "parameters": {
                "type": "object",
                "properties": {
                    "type": {
                        "type": "string",
                        "enum": ["produto", "servico"],
                        "description": "Filtra por produtos ou serviços (opcional)",
                    },
                },
            },
        },
    },
]

PRODUCT_TYPE_FILTERS = {
    "produto": False,
    "product": False,
    "servico": True,
    "serviço": True,
    "service": True,
}


class ToolArgumentError(ValueError):
    """Model sent arguments the tool cannot use."""


def available_products(tenant: TenantConfig) -> List[ProductEntry]:
    """Catalog entries owned by the tenant and currently active."""
    return [
        product
        for product in tenant.products
        if product.active and product.company_id is not None and product.company_id == tenant.company_id
    ]


def _project_product(product: ProductEntry) -> dict:
    has_image = bool(product.image) or any(variant.image for variant in product.variant_items)
    if product.image:
        visual_instruction = f"Para mostrar a foto use [SHOW_IMAGE: {product.id}]"
    elif has_image:
        visual_instruction = "Foto disponível apenas nas variações; use [SHOW_IMAGE: ID_DA_VARIACAO]"
    else:
        visual_instruction = "Sem imagem cadastrada. Não prometa foto."
    return {
        "id": product.id,
        "name": product.name,
        "type": "servico" if product.is_service else "produto",
        "price": None if product.price_hidden else product.price,
        "priceHidden": product.price_hidden,
        "hasImage": has_image,
        "visualInstruction": visual_instruction,
        "hasVariations": bool(product.variant_items),
        "variationCount": len(product.variant_items),
    }


def list_available_products(tenant: TenantConfig, type: Optional[str] = None) -> dict:
    products = available_products(tenant)
    if type:
        wants_service = PRODUCT_TYPE_FILTERS.get(type.strip().lower())
        if wants_service is not None:
            products = [product for product in products if product.is_service == wants_service]
    return {"success": True, "count": len(products), "products": [_project_product(p) for p in products]}


def _tenant_zone(tenant: TenantConfig) -> ZoneInfo:
    try:
        return ZoneInfo(tenant.scheduling.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {tenant.scheduling.timezone}, using UTC")
        return ZoneInfo("UTC")


def _find_specialist(tenant: TenantConfig, specialist_id: Optional[str]) -> Optional[Specialist]:
    if not specialist_id:
        return None
    for specialist in tenant.scheduling.specialists:
        if specialist.id == str(specialist_id).strip():
            return specialist
    raise ToolArgumentError(f"Profissional {specialist_id} não encontrado")


def _find_type(tenant: TenantConfig, type_id: Optional[str]) -> Optional[AppointmentType]:
    if not type_id:
        return None
    for appointment_type in tenant.scheduling.appointment_types:
        if appointment_type.id == str(type_id).strip():
            return appointment_type
    raise ToolArgumentError(f"Tipo de atendimento {type_id} não encontrado")


def _calendar_id(tenant: TenantConfig, specialist: Optional[Specialist]) -> str:
    if specialist and specialist.calendar_id:
        return specialist.calendar_id
    return tenant.calendar.calendar_id


def _duration(tenant: TenantConfig, appointment_type: Optional[AppointmentType]) -> int:
    if appointment_type:
        return appointment_type.duration_minutes
    return tenant.scheduling.default_duration_minutes


def _parse_start(value: str, zone: ZoneInfo) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        raise ToolArgumentError(f"startTime inválido: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=zone)
    return parsed


def check_availability(
    tenant: TenantConfig,
    date: str,
    specialistId: Optional[str] = None,
    typeId: Optional[str] = None,
) -> dict:
    zone = _tenant_zone(tenant)
    try:
        day = datetime.strptime((date or "").strip()[:10], "%Y-%m-%d").date()
    except ValueError:
        raise ToolArgumentError(f"Data inválida: {date!r}, use YYYY-MM-DD")

    specialist = _find_specialist(tenant, specialistId)
    appointment_type = _find_type(tenant, typeId)

    day_start = datetime.combine(day, time.min, tzinfo=zone)
    busy = calendar_service.query_busy(
        tenant.calendar,
        _calendar_id(tenant, specialist),
        day_start,
        day_start + timedelta(days=1),
        tenant.scheduling.timezone,
    )
    if not busy.ok:
        return {"success": False, "error": busy.error}

    return {
        "success": True,
        "date": day.isoformat(),
        "timezone": tenant.scheduling.timezone,
        "durationMinutes": _duration(tenant, appointment_type),
        "busy": busy.value,
    }


def book_appointment(
    db: Session,
    tenant: TenantConfig,
    startTime: str,
    customerName: str,
    customerPhone: str,
    specialistId: Optional[str] = None,
    typeId: Optional[str] = None,
    notes: Optional[str] = None,
) -> dict:
    if not customerName or not customerPhone:
        raise ToolArgumentError("customerName e customerPhone são obrigatórios")

    zone = _tenant_zone(tenant)
    start = _parse_start(startTime, zone)
    specialist = _find_specialist(tenant, specialistId)
    appointment_type = _find_type(tenant, typeId)
    end = start + timedelta(minutes=_duration(tenant, appointment_type))

    summary = f"{appointment_type.name if appointment_type else 'Atendimento'} - {customerName}"
    description_lines = [f"Cliente: {customerName}", f"Telefone: {customerPhone}"]
    if specialist:
        description_lines.append(f"Profissional: {specialist.name}")
    if notes:
        description_lines.append(f"Observações: {notes}")

    event = calendar_service.create_event(
        tenant.calendar,
        _calendar_id(tenant, specialist),
        summary=summary,
        description="\n".join(description_lines),
        start=start,
        end=end,
        timezone_name=tenant.scheduling.timezone,
    )
    if not event.ok:
        return {"success": False, "error": event.error}

    appointment = Appointment(
        company_id=tenant.company_id,
        customer_name=customerName,
        customer_phone=customerPhone,
        start_time=start,
        end_time=end,
        specialist_id=specialist.id if specialist else None,
        type_id=appointment_type.id if appointment_type else None,
        notes=notes,
        external_event_id=event.value.get("id"),
        external_link=event.value.get("link"),
        status="scheduled",
        created_at=datetime.now(timezone.utc),
    )
    db.add(appointment)
    db.flush()

    logger.info(
        "Appointment booked",
        extra={"context": {"company_id": tenant.company_id, "start": start.isoformat(), "event_id": event.value.get("id")}},
    )
    return {
        "success": True,
        "message": "Agendamento confirmado",
        "startTime": start.isoformat(),
        "endTime": end.isoformat(),
        "link": event.value.get("link"),
    }


def _parse_arguments(raw: str) -> Result[dict]:
    try:
        arguments = json.loads(raw or "{}")
    except ValueError as e:
        return Result.failure(f"Argumentos inválidos: {e}", "invalid_arguments")
    if not isinstance(arguments, dict):
        return Result.failure("Argumentos devem ser um objeto JSON", "invalid_arguments")
    return Result.success(arguments)


def execute_tool(db: Session, tenant: TenantConfig, call: ToolCall) -> dict:
    """Run one model-requested tool. Never raises."""
    arguments = _parse_arguments(call.arguments)
    if not arguments.ok:
        return {"success": False, "error": arguments.error}

    args = arguments.value
    try:
        if call.name == "list_available_products":
            return list_available_products(tenant, type=args.get("type"))
        if call.name == "check_availability":
            return check_availability(
                tenant,
                args.get("date"),
                specialistId=args.get("specialistId"),
                typeId=args.get("typeId"),
            )
        if call.name == "book_appointment":
            return book_appointment(
                db,
                tenant,
                args.get("startTime"),
                args.get("customerName"),
                args.get("customerPhone"),
                specialistId=args.get("specialistId"),
                typeId=args.get("typeId"),
                notes=args.get("notes"),
            )
        return {"success": False, "error": f"Ferramenta desconhecida: {call.name}"}
    except ToolArgumentError as e:
        return {"success": False, "error": str(e)}
    except Exception as e:
        logger.error(
            f"Tool {call.name} failed",
            extra={"context": {"company_id": tenant.company_id, "tool": call.name}},
            exc_info=True,
        )
        return {"success": False, "error": f"Falha ao executar {call.name}: {e}"}
