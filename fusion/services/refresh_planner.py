"""
Staleness decisions for existing fusion accounts.

Evaluated once per fusion account per run. Refresh is advisory: the run
recomputes attributes only when the planner says so, and a failed
recomputation keeps the previous attribute set.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Sequence

from fusion.core.config import FusionConfig
from fusion.core.models import STATUS_EDITED, FusionAccount, SourceAccount

logger = logging.getLogger(__name__)

UNEDIT_MESSAGE = "Automatically unedited by change in contributing accounts"


@dataclass(frozen=True)
class RefreshDecision:
    refresh: bool
    reason: str


class RefreshPlanner:
    """
    Decides whether a fusion account's merged attributes are stale.

    Rules, in order:
    1. No contributing accounts: never refresh.
    2. Membership drift (contributors added or removed): always refresh.
    3. Forced (config flag or account marked for re-merge): refresh.
    4. Time based: refresh when the source configuration or any contributing
       account changed after the last fusion aggregation. Manually edited
       accounts are checked the same way.
    """

    def __init__(
        self,
        config: FusionConfig,
        last_aggregation: Optional[datetime] = None,
        config_modified: Optional[datetime] = None,
    ):
        self.config = config
        self.last_aggregation = last_aggregation
        self.config_modified = config_modified if config_modified is not None else config.modified

    def detect_membership_drift(
        self, fusion_account: FusionAccount, current_account_ids: Iterable[str]
    ) -> bool:
        """
        Compare recorded contributors with the identity's live account list.

        Membership changed when the union of both sets is larger than either
        one alone. A drifted account that was manually edited loses its
        'edited' status, since external changes supersede the manual edit.

        Args:
            fusion_account: Account whose recorded contributors are checked
            current_account_ids: Ids the owning identity currently holds

        Returns:
            True if membership drifted
        """
        previous = set(fusion_account.accounts)
        current = set(current_account_ids)
        union = previous | current
        drift = len(union) > max(len(previous), len(current))

        if drift and fusion_account.remove_status(STATUS_EDITED, UNEDIT_MESSAGE):
            logger.info(f"Fusion account {fusion_account.unique_id} unedited after membership change")
        return drift

    def plan(
        self,
        fusion_account: FusionAccount,
        contributing: Sequence[SourceAccount],
        drift: bool = False,
    ) -> RefreshDecision:
        """
        Decide whether to recompute attributes.

        Args:
            fusion_account: Account after correlation repair
            contributing: Its current contributing source accounts
            drift: Result of detect_membership_drift

        Returns:
            RefreshDecision with a short reason for logs
        """
        if not fusion_account.accounts:
            return RefreshDecision(False, "no contributing accounts")
        if drift:
            return RefreshDecision(True, "membership changed")
        if self.config.force_attribute_refresh or fusion_account.needs_refresh:
            return RefreshDecision(True, "forced")

        if self.last_aggregation is None:
            return RefreshDecision(True, "no previous aggregation")
        if self.config_modified is not None and self.config_modified > self.last_aggregation:
            return RefreshDecision(True, "configuration changed")
        for acct in contributing:
            if acct.modified is not None and acct.modified > self.last_aggregation:
                return RefreshDecision(True, f"account {acct.id} changed")
        return RefreshDecision(False, "up to date")
