"""
Unit tests for fusion/services/refresh_planner.py
"""
from datetime import datetime, timedelta, timezone

import pytest

from fusion.core.models import STATUS_EDITED
from fusion.services.refresh_planner import UNEDIT_MESSAGE, RefreshPlanner

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class TestMembershipDrift:
    """Tests for detect_membership_drift."""

    @pytest.mark.unit
    def test_same_membership(self, config, make_fusion_account):
        fa = make_fusion_account("x", accounts=["a", "b"])
        assert RefreshPlanner(config).detect_membership_drift(fa, ["b", "a"]) is False

    @pytest.mark.unit
    def test_added_account(self, config, make_fusion_account):
        fa = make_fusion_account("x", accounts=["a"])
        assert RefreshPlanner(config).detect_membership_drift(fa, ["a", "b"]) is True

    @pytest.mark.unit
    def test_swapped_account(self, config, make_fusion_account):
        fa = make_fusion_account("x", accounts=["a", "b"])
        assert RefreshPlanner(config).detect_membership_drift(fa, ["a", "c"]) is True

    @pytest.mark.unit
    def test_drift_unedits(self, config, make_fusion_account):
        fa = make_fusion_account("x", accounts=["a"], statuses={STATUS_EDITED})
        RefreshPlanner(config).detect_membership_drift(fa, ["a", "b"])
        assert not fa.has_status(STATUS_EDITED)
        assert fa.history[-1].endswith(UNEDIT_MESSAGE)


class TestPlan:
    """Tests for plan()."""

    @pytest.mark.unit
    def test_no_accounts_never_refreshes(self, make_config, make_fusion_account):
        planner = RefreshPlanner(make_config(force_attribute_refresh=True))
        assert planner.plan(make_fusion_account("x"), [], drift=True).refresh is False

    @pytest.mark.unit
    def test_drift_refreshes(self, config, make_fusion_account, make_account):
        planner = RefreshPlanner(config, last_aggregation=T0)
        fa = make_fusion_account("x", accounts=["a"])
        decision = planner.plan(fa, [make_account("a")], drift=True)
        assert decision.refresh is True
        assert decision.reason == "membership changed"

    @pytest.mark.unit
    def test_forced_by_config(self, make_config, make_fusion_account, make_account):
        planner = RefreshPlanner(make_config(force_attribute_refresh=True), last_aggregation=T0)
        fa = make_fusion_account("x", accounts=["a"], statuses={STATUS_EDITED})
        assert planner.plan(fa, [make_account("a")]).refresh is True

    @pytest.mark.unit
    def test_forced_by_flag(self, config, make_fusion_account, make_account):
        planner = RefreshPlanner(config, last_aggregation=T0)
        fa = make_fusion_account("x", accounts=["a"])
        fa.force_refresh()
        assert planner.plan(fa, [make_account("a")]).reason == "forced"

    @pytest.mark.unit
    def test_edited_account_refreshed_when_source_changed(self, config, make_fusion_account, make_account):
        planner = RefreshPlanner(config, last_aggregation=T0)
        fa = make_fusion_account("x", accounts=["a"], statuses={STATUS_EDITED})
        decision = planner.plan(fa, [make_account("a", modified=T0 + timedelta(days=1))])
        assert decision.refresh is True
        assert decision.reason == "account a changed"

    @pytest.mark.unit
    def test_edited_account_up_to_date(self, make_config, make_fusion_account, make_account):
        config = make_config(modified=T0 - timedelta(days=1))
        planner = RefreshPlanner(config, last_aggregation=T0)
        fa = make_fusion_account("x", accounts=["a"], statuses={STATUS_EDITED})
        assert planner.plan(fa, [make_account("a", modified=T0)]).refresh is False

    @pytest.mark.unit
    def test_first_aggregation_refreshes(self, config, make_fusion_account, make_account):
        fa = make_fusion_account("x", accounts=["a"])
        assert RefreshPlanner(config).plan(fa, [make_account("a")]).refresh is True

    @pytest.mark.unit
    def test_config_changed(self, make_config, make_fusion_account, make_account):
        config = make_config(modified=T0 + timedelta(hours=1))
        fa = make_fusion_account("x", accounts=["a"])
        decision = RefreshPlanner(config, last_aggregation=T0).plan(fa, [make_account("a", modified=T0)])
        assert decision.reason == "configuration changed"

    @pytest.mark.unit
    def test_account_changed(self, config, make_fusion_account, make_account):
        fa = make_fusion_account("x", accounts=["a", "b"])
        accounts = [make_account("a", modified=T0), make_account("b", modified=T0 + timedelta(seconds=1))]
        decision = RefreshPlanner(config, last_aggregation=T0).plan(fa, accounts)
        assert decision.refresh is True
        assert decision.reason == "account b changed"

    @pytest.mark.unit
    def test_up_to_date(self, make_config, make_fusion_account, make_account):
        config = make_config(modified=T0 - timedelta(days=1))
        fa = make_fusion_account("x", accounts=["a"])
        decision = RefreshPlanner(config, last_aggregation=T0).plan(fa, [make_account("a", modified=T0)])
        assert decision.refresh is False
        assert decision.reason == "up to date"
