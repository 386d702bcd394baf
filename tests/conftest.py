from unittest.mock import Mock

import pytest

from atendente.schemas.tenant import TenantConfig
from atendente.services.channel_service import ChannelValidityCache
from atendente.services.dedup_service import DedupCache


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")


@pytest.fixture
def make_tenant():
    """Build a TenantConfig from camelCase overrides."""

    def _make(**overrides):
        data = {
            "companyId": "company-1",
            "prompUuid": "promp-uuid",
            "prompToken": "promp-token",
            "openaiKey": "sk-test",
            "systemPrompt": "Você é a atendente da Loja Teste.",
        }
        data.update(overrides)
        return TenantConfig.model_validate(data)

    return _make


@pytest.fixture
def tenant(make_tenant):
    return make_tenant(
        products=[
            {"id": 123, "name": "Camisa", "price": 49.9, "image": "http://x/i.jpg"},
            {"id": "p2", "name": "Calça Jeans", "price": 120.0, "pdf": "http://x/calca.pdf"},
            {"id": "p3", "name": "Boné", "price": 30, "active": False, "image": "http://x/bone.jpg"},
            {"id": "p4", "name": "Relógio", "price": 300, "companyId": "other-company", "image": "http://x/r.jpg"},
            {
                "id": "p5",
                "name": "Tênis",
                "price": 250,
                "variantItems": [
                    {"id": "v1", "name": "Tênis Azul", "color": "Azul", "size": "42", "image": "http://x/azul.jpg"},
                    {"id": "v2", "name": "Tênis Preto", "color": "Preto", "size": "40"},
                ],
            },
            {"id": "s1", "name": "Consultoria de Estilo", "price": 200, "type": "service"},
        ]
    )


@pytest.fixture
def dedup_cache():
    return DedupCache(ttl_seconds=15)


@pytest.fixture
def validity_cache():
    return ChannelValidityCache(max_entries=16)
