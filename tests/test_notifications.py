"""
Unit tests for fusion/services/notifications.py
"""
from unittest.mock import AsyncMock

import pytest

from fusion.services.notifications import ErrorCollector

OWNER = {"id": "owner-1", "attributes": {"email": "owner@example.com"}}


class TestErrorCollector:
    """Tests for error accumulation."""

    @pytest.mark.unit
    def test_handle_error(self):
        errors = ErrorCollector()
        errors.handle_error("Failed to correlate a1", "correlation")
        assert len(errors) == 1
        assert str(errors.errors[0]) == "[correlation] Failed to correlate a1"

    @pytest.mark.unit
    def test_build_message(self):
        errors = ErrorCollector()
        errors.handle_error("one")
        errors.handle_error("two", "refresh")
        message = errors.build_message("Fusion")

        assert message["subject"] == "Identity fusion errors for Fusion"
        assert message["body"].startswith("2 errors during the last run:")
        assert "[refresh] two" in message["body"]


class TestNotifyOwner:
    """Tests for owner notification."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_nothing_to_send(self, fake_client):
        assert await ErrorCollector().notify_owner(fake_client, OWNER, "Fusion Email Sender", "Fusion") is False
        fake_client.list_workflows.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sends_through_workflow(self, fake_client):
        errors = ErrorCollector()
        errors.handle_error("boom")

        sent = await errors.notify_owner(fake_client, OWNER, "Fusion Email Sender", "Fusion")

        assert sent is True
        workflow_id, payload = fake_client.test_workflow.await_args.args
        assert workflow_id == "wf-1"
        assert payload["recipients"] == ["owner@example.com"]
        assert "boom" in payload["body"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_owner_without_email(self, fake_client):
        errors = ErrorCollector()
        errors.handle_error("boom")
        assert await errors.notify_owner(fake_client, {"attributes": {}}, "Fusion Email Sender", "Fusion") is False
        fake_client.test_workflow.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_workflow(self, fake_client):
        fake_client.list_workflows = AsyncMock(return_value=[{"id": "wf-2", "name": "Other"}])
        errors = ErrorCollector()
        errors.handle_error("boom")
        assert await errors.notify_owner(fake_client, OWNER, "Fusion Email Sender", "Fusion") is False
