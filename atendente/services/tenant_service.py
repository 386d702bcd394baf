import json
from typing import Any, List, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from atendente.logging_config import get_logger
from atendente.models import AgentConfig
from atendente.schemas.tenant import ProductEntry, TenantConfig
from atendente.services.alert_service import alert_error, alert_warning
from atendente.services.result import Result

logger = get_logger("tenant_service")


def _load_json(value: Any, default: Any) -> Any:
    # products were stored as a JSON string before the column became JSONB
    if isinstance(value, str):
        try:
            return json.loads(value) if value.strip() else default
        except ValueError:
            logger.warning("Stored JSON column could not be parsed")
            return default
    return value if value is not None else default


def _integration_fields(integrations: dict) -> dict:
    promp = integrations.get("promp") if isinstance(integrations.get("promp"), dict) else {}
    openai = integrations.get("openai") if isinstance(integrations.get("openai"), dict) else {}
    return {
        "identity": integrations.get("identity") or promp.get("identity"),
        "connection_id": integrations.get("connectionId") or promp.get("connectionId"),
        "promp_uuid": integrations.get("prompUuid") or promp.get("uuid"),
        "promp_token": integrations.get("prompToken") or promp.get("token"),
        "openai_key": integrations.get("openaiKey") or openai.get("key"),
        "voice": integrations.get("voice") or {},
    }


def _valid_products(company_id: Optional[str], products: list) -> List[ProductEntry]:
    """Validate catalog entries one by one; a malformed entry is skipped, not fatal."""
    entries: List[ProductEntry] = []
    skipped = []
    for index, product in enumerate(products):
        if not isinstance(product, dict):
            continue
        try:
            entries.append(ProductEntry.model_validate(product))
        except ValidationError as e:
            skipped.append(product.get("id", index))
            logger.warning(
                "Catalog entry skipped",
                extra={
                    "context": {
                        "company_id": company_id,
                        "product_id": product.get("id"),
                        "index": index,
                        "errors": e.errors(include_url=False)[:3],
                    }
                },
            )
    if skipped:
        alert_warning("Catalog entries skipped", {"company_id": company_id, "products": skipped[:10]})
    return entries


def build_tenant_config(row: AgentConfig) -> TenantConfig:
    """Map an agent_configs row to a TenantConfig. Raises ValidationError on bad data."""
    integrations = _load_json(row.integrations, {})
    if not isinstance(integrations, dict):
        integrations = {}

    products = _load_json(row.products, [])
    if not isinstance(products, list):
        products = []

    data = {
        "company_id": row.company_id,
        "system_prompt": row.system_prompt,
        "model_name": row.model,
        "knowledge_base": row.knowledge_base,
        "products": _valid_products(row.company_id, products),
        "follow_up": _load_json(row.follow_up_config, {}),
        "scheduling": _load_json(row.scheduling_config, {}),
        "calendar": _load_json(row.calendar_config, {}),
        **_integration_fields(integrations),
    }
    return TenantConfig.model_validate(data)


def load_tenant(db: Session, company_id: str) -> Result[TenantConfig]:
    row = db.query(AgentConfig).filter(AgentConfig.company_id == company_id).first()
    if row is None:
        return Result.failure(f"No agent config for company {company_id}", "tenant_not_found")

    try:
        return Result.success(build_tenant_config(row))
    except ValidationError as e:
        logger.error(
            "Agent config failed validation",
            extra={"context": {"company_id": company_id, "errors": e.errors(include_url=False)[:5]}},
        )
        alert_error("Invalid agent config", {"company_id": company_id, "error": str(e)[:300]})
        return Result.failure(str(e), "invalid_config")
