"""
Unit tests for fusion/services/fusion_run.py

A full run is driven against an AsyncMock platform client holding two
contributing sources (HR, AD) and one existing fusion account.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from fusion.core.api_errors import ConfigurationError, NotFoundError, ValidationError
from fusion.core.models import STATUS_AUTHORIZED, STATUS_AUTO, STATUS_MANUAL, STATUS_ORPHAN, STATUS_UNMATCHED
from fusion.services.fusion_run import FusionRun, chunked
from fusion.services.run_context import RunContext

OWNER = {"id": "owner-1", "attributes": {"email": "owner@example.com"}}


@pytest.fixture
def platform(fake_client):
    accounts = {
        "src-hr": [
            {
                "id": "hr-1",
                "sourceName": "HR",
                "identityId": "id-ann",
                "attributes": {"displayName": "Ann Lee", "title": "Engineer"},
            }
        ],
        "src-ad": [
            {"id": "ad-1", "sourceName": "AD", "attributes": {"displayName": "Ann Lee", "title": "Dev"}},
            {"id": "ad-2", "sourceName": "AD", "attributes": {"displayName": "Bob Stone"}},
        ],
        "fusion-src": [
            {
                "id": "fa-1",
                "identityId": "id-ann",
                "attributes": {"uniqueID": "ann", "uuid": "u-ann", "accounts": ["hr-1"]},
            }
        ],
    }
    fake_client.list_sources = AsyncMock(
        return_value=[{"name": "HR", "id": "src-hr"}, {"name": "AD", "id": "src-ad"}]
    )
    fake_client.list_identities = AsyncMock(
        return_value=[
            {
                "id": "id-ann",
                "name": "ann",
                "attributes": {"displayName": "Ann Lee"},
                "accounts": [{"id": "hr-1"}, {"id": "fa-1"}],
            }
        ]
    )
    fake_client.list_accounts_by_source = AsyncMock(side_effect=lambda source_id: accounts[source_id])
    fake_client.list_source_schemas = AsyncMock(
        return_value=[
            {"name": "account", "attributes": [{"name": "displayName"}, {"name": "title"}, {"name": "uniqueID"}]}
        ]
    )
    fake_client.get_latest_account_aggregation = AsyncMock(return_value={"created": "2024-01-01T00:00:00Z"})
    fake_client.get_identity = AsyncMock(return_value=OWNER)
    return fake_client


@pytest.mark.unit
def test_chunked():
    assert chunked([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
    assert chunked([], 3) == []


@pytest.mark.unit
def test_invalid_sizes(config, fake_client):
    with pytest.raises(ValueError):
        FusionRun(fake_client, config, batch_size=0)


# =============================================================================
# Preparation
# =============================================================================


class TestPrepare:
    """Tests for context loading and forced aggregation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_load_context(self, config, platform):
        ctx = await FusionRun(platform, config).load_context()

        assert set(ctx.accounts_by_id) == {"hr-1", "ad-1", "ad-2"}
        assert ctx.fusion_accounts_by_identity["id-ann"].unique_id == "ann"
        assert ctx.schema_attributes == ("displayName", "title", "uniqueID")
        assert ctx.last_aggregation.year == 2024
        assert [acct.id for acct in ctx.uncorrelated_accounts] == ["ad-1", "ad-2"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_source(self, make_config, platform):
        with pytest.raises(NotFoundError, match="LDAP"):
            await FusionRun(platform, make_config(sources=["HR", "LDAP"])).load_context()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_fusion_source_id(self, make_config, platform):
        with pytest.raises(ConfigurationError):
            await FusionRun(platform, make_config(source_id=None)).load_context()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_force_aggregation_waits_for_newer_run(self, make_config, platform):
        platform.get_source = AsyncMock(return_value={"modified": "2024-02-01T00:00:00Z"})
        platform.get_latest_account_aggregation = AsyncMock(
            side_effect=[
                {"created": "2024-01-01T00:00:00Z"},
                {"created": "2024-01-01T00:00:00Z"},
                {"created": "2024-02-02T00:00:00Z"},
            ]
        )
        run = FusionRun(platform, make_config(sources=["HR"], force_aggregation=True))
        run.AGGREGATION_POLL_INTERVAL = 0

        assert await run.force_aggregation() == ["HR"]
        platform.aggregate_accounts.assert_awaited_once_with("src-hr")
        assert platform.get_latest_account_aggregation.await_count == 3
        assert len(run.errors) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_force_aggregation_skips_fresh_sources(self, make_config, platform):
        platform.get_source = AsyncMock(return_value={"modified": "2023-12-01T00:00:00Z"})
        run = FusionRun(platform, make_config(sources=["HR"], force_aggregation=True))

        assert await run.force_aggregation() == []
        platform.aggregate_accounts.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_force_aggregation_gives_up(self, make_config, platform):
        platform.get_source = AsyncMock(return_value={"modified": "2024-02-01T00:00:00Z"})
        run = FusionRun(platform, make_config(sources=["HR"], force_aggregation=True))
        run.AGGREGATION_POLL_INTERVAL = 0
        run.AGGREGATION_MAX_POLLS = 2

        await run.force_aggregation()
        assert "did not complete" in str(run.errors.errors[0])


# =============================================================================
# Full run
# =============================================================================


class TestRun:
    """End-to-end run scenarios."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_auto_merge_and_new_account(self, make_config, platform):
        run = FusionRun(platform, make_config(global_merging_identical=True))

        output = [item async for item in run.run()]

        by_name = {item["name"]: item for item in output}
        assert set(by_name) == {"ann", "Bob Stone"}

        ann = by_name["ann"]["attributes"]
        assert ann["accounts"] == ["hr-1", "ad-1"]
        assert STATUS_AUTO in ann["statuses"]
        assert ann["title"] == "Engineer"
        assert ann["sources"] == "[HR] [AD]"
        platform.correlate_account.assert_awaited_once_with("ad-1", "id-ann")

        bob = by_name["Bob Stone"]["attributes"]
        assert bob["accounts"] == ["ad-2"]
        assert STATUS_UNMATCHED in bob["statuses"]
        assert by_name["Bob Stone"]["key"] == bob["uuid"]

        platform.test_workflow.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ambiguous_match_publishes_review(self, make_config, platform):
        run = FusionRun(platform, make_config())

        output = [item async for item in run.run()]

        assert [item["name"] for item in output] == ["ann", "Bob Stone"]
        platform.create_form.assert_awaited_once()
        form_id, recipients, form_input = platform.create_form_instance.await_args.args
        assert form_id == "form-1"
        assert recipients == ["owner-1"]
        assert form_input == {"displayName": "ann lee", "account": "ad-1"}

        report = run.build_report()
        assert report["totals"] == {
            "analyzed": 2,
            "with_matches": 1,
            "review_cases": 1,
            "created": 1,
            "review_decisions": 0,
        }
        assert report["errors"] == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_existing_review_form_not_duplicated(self, make_config, platform):
        platform.list_forms = AsyncMock(return_value=[{"name": "Identity Merging - ad-1 [AD]"}])
        run = FusionRun(platform, make_config())

        [item async for item in run.run()]

        platform.create_form.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_errors_sent_to_owner(self, make_config, platform):
        platform.correlate_account = AsyncMock(side_effect=ValidationError("rejected"))
        run = FusionRun(platform, make_config(global_merging_identical=True))

        output = [item async for item in run.run()]

        assert len(output) == 2
        assert any("ad-1" in str(error) for error in run.errors.errors)
        platform.test_workflow.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_owner_is_fatal(self, make_config, platform):
        run = FusionRun(platform, make_config(owner_id=None))
        with pytest.raises(ConfigurationError):
            [item async for item in run.run()]


# =============================================================================
# Review decisions
# =============================================================================

REVIEW_FORM = {"id": "form-9", "name": "Identity Merging - ad-1 [AD]"}


def review_instance(state, decision=None, account="ad-1"):
    instance = {
        "id": "fi-9",
        "formDefinitionId": "form-9",
        "state": state,
        "formInput": {"displayName": "ann lee", "account": account},
        "recipients": [{"type": "IDENTITY", "id": "id-ann"}],
        "modified": "2024-01-02T00:00:00Z",
    }
    if decision is not None:
        instance["formData"] = {"identities": decision}
    return instance


class TestReviewDecisions:
    """Tests for applying answered review forms during a run."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_assignment_applied_and_form_deleted(self, make_config, platform):
        platform.list_forms = AsyncMock(side_effect=[[REVIEW_FORM], []])
        platform.list_form_instances = AsyncMock(return_value=[review_instance("COMPLETED", "id-ann")])
        run = FusionRun(platform, make_config())

        output = [item async for item in run.run()]

        by_name = {item["name"]: item for item in output}
        assert set(by_name) == {"ann", "Bob Stone"}
        ann = by_name["ann"]["attributes"]
        assert ann["accounts"] == ["hr-1", "ad-1"]
        assert STATUS_AUTHORIZED in ann["statuses"]
        assert ann["history"][-1].endswith("Account ad-1 [AD] assigned by ann")
        platform.correlate_account.assert_awaited_once_with("ad-1", "id-ann")
        platform.delete_form.assert_awaited_once_with("form-9")
        platform.create_form.assert_not_called()
        assert run.build_report()["totals"]["review_decisions"] == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_new_identity_decision(self, make_config, platform):
        instance = review_instance("COMPLETED", ["This is a new identity"], account={"value": "ad-1"})
        platform.list_forms = AsyncMock(side_effect=[[REVIEW_FORM], []])
        platform.list_form_instances = AsyncMock(return_value=[instance])
        run = FusionRun(platform, make_config())

        output = [item async for item in run.run()]

        assert len(output) == 3
        decided = next(item for item in output if item["attributes"]["accounts"] == ["ad-1"])
        assert STATUS_MANUAL in decided["attributes"]["statuses"]
        platform.delete_form.assert_awaited_once_with("form-9")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pending_form_kept(self, make_config, platform):
        platform.list_forms = AsyncMock(return_value=[REVIEW_FORM])
        platform.list_form_instances = AsyncMock(return_value=[review_instance("ASSIGNED")])
        run = FusionRun(platform, make_config())

        output = [item async for item in run.run()]

        assert [item["name"] for item in output] == ["ann", "Bob Stone"]
        platform.delete_form.assert_not_called()
        platform.create_form.assert_not_called()
        assert run.build_report()["totals"]["analyzed"] == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancelled_form_replaced(self, make_config, platform):
        platform.list_forms = AsyncMock(side_effect=[[REVIEW_FORM], []])
        platform.list_form_instances = AsyncMock(return_value=[review_instance("CANCELLED")])
        run = FusionRun(platform, make_config())

        [item async for item in run.run()]

        platform.delete_form.assert_awaited_once_with("form-9")
        platform.create_form.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_form_for_missing_account_deleted(self, make_config, platform):
        platform.list_forms = AsyncMock(side_effect=[[REVIEW_FORM], []])
        platform.list_form_instances = AsyncMock(return_value=[review_instance("ASSIGNED", account="gone")])
        run = FusionRun(platform, make_config())

        [item async for item in run.run()]

        platform.delete_form.assert_awaited_once_with("form-9")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_identity_keeps_form(self, make_config, platform):
        platform.list_forms = AsyncMock(return_value=[REVIEW_FORM])
        platform.list_form_instances = AsyncMock(return_value=[review_instance("COMPLETED", "id-missing")])
        run = FusionRun(platform, make_config())

        [item async for item in run.run()]

        platform.delete_form.assert_not_called()
        assert any("ad-1" in str(error) for error in run.errors.errors)
        assert run.build_report()["totals"]["review_decisions"] == 0


# =============================================================================
# Fusion account batches
# =============================================================================


class TestFusionAccountBatches:
    """Tests for per-account refresh and batching."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_batches(self, config, fake_client, make_fusion_account):
        accounts = [make_fusion_account(f"u{i}") for i in range(5)]
        ctx = RunContext.build(config, identities=[], accounts=[], fusion_accounts=accounts)
        run = FusionRun(fake_client, config, batch_size=2, chunk_size=1)

        batches = [batch async for batch in run.iter_fusion_accounts(ctx)]

        assert [len(batch) for batch in batches] == [2, 2, 1]
        assert [item["name"] for batch in batches for item in batch] == [f"u{i}" for i in range(5)]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_orphan_status(self, config, fake_client, make_fusion_account):
        orphan = make_fusion_account("gone", accounts=["deleted-account"])
        ctx = RunContext.build(config, identities=[], accounts=[], fusion_accounts=[orphan])

        [batch async for batch in FusionRun(fake_client, config).iter_fusion_accounts(ctx)]

        assert orphan.accounts == []
        assert orphan.has_status(STATUS_ORPHAN)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refresh_failure_keeps_previous_attributes(
        self, config, fake_client, make_account, make_fusion_account
    ):
        fa = make_fusion_account("ann", accounts=["hr-1"], attributes={"title": "Old"})
        ctx = RunContext.build(
            config,
            identities=[],
            accounts=[make_account("hr-1", "HR", identity_id="id-ann", attributes={"title": "New"})],
            fusion_accounts=[fa],
        )
        run = FusionRun(fake_client, config)
        run.resolver.resolve = MagicMock(side_effect=RuntimeError("boom"))

        batches = [batch async for batch in run.iter_fusion_accounts(ctx)]

        assert batches[0][0]["attributes"]["title"] == "Old"
        assert "Failed to refresh ann" in str(run.errors.errors[0])

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refresh_applies_merge(self, config, fake_client, make_account, make_fusion_account):
        fa = make_fusion_account("ann", accounts=["hr-1"], attributes={"title": "Old"})
        ctx = RunContext.build(
            config,
            identities=[],
            accounts=[make_account("hr-1", "HR", identity_id="id-ann", attributes={"title": "New"})],
            fusion_accounts=[fa],
        )

        [batch async for batch in FusionRun(fake_client, config).iter_fusion_accounts(ctx)]

        assert fa.attributes["title"] == "New"
        assert fa.sources == "[HR]"
