"""
Pytest configuration and shared fixtures.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from fusion.core.config import FusionConfig, reset_settings
from fusion.core.models import FusionAccount, IdentityDocument, SourceAccount


@pytest.fixture(scope="function")
def clean_env(monkeypatch, tmp_path):
    """
    Clean environment for testing.

    Removes all fusion-related env vars and runs from an empty directory so
    a local .env file cannot leak into settings.
    """
    env_vars = [
        "FUSION_BASE_URL",
        "FUSION_CLIENT_ID",
        "FUSION_CLIENT_SECRET",
        "FUSION_LOG_LEVEL",
        "FUSION_ENABLE_QUEUE",
        "FUSION_ENABLE_RETRY",
        "FUSION_REQUESTS_PER_SECOND",
        "FUSION_MAX_CONCURRENT_REQUESTS",
        "FUSION_MAX_RETRIES",
        "FUSION_REQUEST_TIMEOUT",
        "FUSION_PAGE_SIZE",
        "FUSION_STATS_INTERVAL",
        "LOG_LEVEL",
    ]
    for var in env_vars:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)

    # Reset settings singleton
    reset_settings()

    yield

    # Reset again after test
    reset_settings()


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def make_config():
    def _make(**overrides) -> FusionConfig:
        values = {
            "source_id": "fusion-src",
            "source_name": "Fusion",
            "sources": ["HR", "AD"],
            "owner_id": "owner-1",
            "merging_attributes": ["displayName"],
            "merging_score": 90,
        }
        values.update(overrides)
        return FusionConfig(**values)

    return _make


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def make_account():
    def _make(account_id, source_name="HR", identity_id=None, attributes=None, modified=None, **kwargs):
        return SourceAccount(
            id=account_id,
            source_name=source_name,
            identity_id=identity_id,
            attributes=attributes if attributes is not None else {},
            modified=modified,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_identity():
    def _make(identity_id, name="", attributes=None, account_ids=None):
        return IdentityDocument(
            id=identity_id,
            name=name or identity_id,
            display_name=(attributes or {}).get("displayName"),
            attributes=attributes or {},
            account_ids=list(account_ids or []),
        )

    return _make


@pytest.fixture
def make_fusion_account():
    def _make(unique_id, accounts=None, identity_id=None, **kwargs):
        return FusionAccount(
            unique_id=unique_id,
            uuid=kwargs.pop("uuid", f"uuid-{unique_id}"),
            accounts=list(accounts or []),
            identity_id=identity_id,
            **kwargs,
        )

    return _make


@pytest.fixture
def fake_client():
    """Platform client double; every remote call is an AsyncMock."""
    client = AsyncMock()
    client.correlate_account = AsyncMock(return_value={})
    client.list_forms = AsyncMock(return_value=[])
    client.create_form = AsyncMock(side_effect=lambda definition: {"id": "form-1", **definition})
    client.create_form_instance = AsyncMock(return_value={"id": "instance-1"})
    client.list_form_instances = AsyncMock(return_value=[])
    client.delete_form = AsyncMock(return_value=None)
    client.list_workflows = AsyncMock(return_value=[{"id": "wf-1", "name": "Fusion Email Sender"}])
    client.test_workflow = AsyncMock(return_value={})
    client.get_queue_stats = MagicMock(return_value=None)
    return client
