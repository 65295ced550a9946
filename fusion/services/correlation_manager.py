"""
Correlation repair.

A fusion account records which source accounts contribute to it. When one
of those accounts is not yet linked to the owning identity on the platform,
it is correlated here. Correlation calls are expensive, so they are counted
and the count is logged per batch.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping

from fusion.core.models import FusionAccount, SourceAccount

logger = logging.getLogger(__name__)


@dataclass
class CorrelationResult:
    source_accounts: List[SourceAccount] = field(default_factory=list)
    account_ids: List[str] = field(default_factory=list)
    correlated: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class CorrelationManager:
    """
    Links uncorrelated contributors of a fusion account to its identity.

    Args:
        client: Platform client exposing correlate_account(account_id, identity_id)
        accounts_by_id: Read-only index of this run's contributing source accounts
    """

    def __init__(self, client: Any, accounts_by_id: Mapping[str, SourceAccount]):
        self.client = client
        self.accounts_by_id = accounts_by_id
        self.correlated_count = 0

    async def repair(
        self, fusion_account: FusionAccount, known_account_ids: Iterable[str]
    ) -> CorrelationResult:
        """
        Reconcile a fusion account's contributors with its identity.

        Args:
            fusion_account: Account with an identity_id
            known_account_ids: Ids the identity currently owns

        Returns:
            CorrelationResult; fusion_account.accounts is replaced by the
            reconciled id list
        """
        result = CorrelationResult()
        for account_id in known_account_ids:
            acct = self.accounts_by_id.get(account_id)
            if acct is not None and account_id not in result.account_ids:
                result.account_ids.append(account_id)
                result.source_accounts.append(acct)

        identity_id = fusion_account.identity_id
        for account_id in list(fusion_account.accounts):
            if account_id in result.account_ids:
                continue
            acct = self.accounts_by_id.get(account_id)
            if acct is None:
                continue
            if not identity_id:
                # No identity yet; keep the recorded link as is.
                result.account_ids.append(account_id)
                result.source_accounts.append(acct)
                continue
            if not acct.is_uncorrelated:
                continue
            try:
                await self.client.correlate_account(account_id, identity_id)
            except Exception as e:
                logger.error(
                    f"Failed to correlate account {account_id} to identity {identity_id}: {e}"
                )
                result.failed.append(account_id)
                result.account_ids.append(account_id)
                result.source_accounts.append(acct)
                continue

            self.correlated_count += 1
            result.correlated.append(account_id)
            result.account_ids.append(account_id)
            result.source_accounts.append(acct)

        fusion_account.accounts = list(result.account_ids)
        return result

    def log_and_reset(self) -> int:
        """Log the correlation count since the last call and reset it."""
        count = self.correlated_count
        if count:
            logger.info(f"Correlated {count} accounts")
        self.correlated_count = 0
        return count
