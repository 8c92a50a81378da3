from __future__ import annotations

import os
import pytest
import pytest_asyncio

# Set a test master key for the SQL key provider
os.environ.setdefault("VEIL_MASTER_KEY", "test_key_for_development_only_32chars00")

from config import Settings
from veil.engine import PrivacyEngine
from veil.key_provider import InMemoryKeyProvider
from veil.stores import InMemoryAuditStore, InMemoryTokenMappingStore
from veil.techniques.registry import TechniqueRegistry, build_default_registry


@pytest.fixture
def session_salt():
    """A deterministic salt for testing."""
    return b"test_salt_32_bytes_long_exactly!!"


@pytest.fixture
def encryption_key():
    """A derived key for testing."""
    from veil.encryption import derive_key
    return derive_key("test_key_for_development_only_32chars00", b"test_salt_32_bytes_long_exactly!!", iterations=1_000)


@pytest.fixture
def settings() -> Settings:
    """Settings independent of the developer's environment and .env file."""
    return Settings(
        _env_file=None,
        veil_master_key="test_key_for_development_only_32chars00",
        kdf_iterations=1_000,
    )


@pytest.fixture
def registry() -> TechniqueRegistry:
    return build_default_registry()


@pytest.fixture
def audit_store() -> InMemoryAuditStore:
    return InMemoryAuditStore()


@pytest.fixture
def token_store() -> InMemoryTokenMappingStore:
    return InMemoryTokenMappingStore()


@pytest_asyncio.fixture
async def key_provider() -> InMemoryKeyProvider:
    """An in-memory key provider with one active AES-256-GCM key."""
    provider = InMemoryKeyProvider()
    await provider.create_key()
    return provider


@pytest_asyncio.fixture
async def active_key_id(key_provider: InMemoryKeyProvider) -> str:
    return await key_provider.get_active_key_id()


@pytest_asyncio.fixture
async def engine(settings: Settings) -> PrivacyEngine:
    privacy_engine = PrivacyEngine.in_memory(settings=settings)
    await privacy_engine.initialize()
    return privacy_engine


@pytest.fixture
def patient_record() -> dict:
    """A realistic record mixing direct and quasi-identifiers."""
    return {
        "name": "John Smith",
        "email": "john@example.com",
        "age": 34,
        "zip_code": "10027",
        "salary": 85_000,
        "diagnosis": "asthma",
    }
