"""
Per-run lookup state.

Everything the services need about the tenant is fetched once at the start
of a run and frozen into a RunContext that is passed explicitly to each
component. Only the UUID pool and the unique ID generator change while
accounts are being processed.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from fusion.core.config import FusionConfig, UniqueIdScope
from fusion.core.models import (
    STATUS_REVIEWER,
    FusionAccount,
    IdentityDocument,
    SourceAccount,
)
from fusion.services.unique_id import UniqueIdGenerator

logger = logging.getLogger(__name__)


class UuidPool:
    """
    Hands out UUIDs never seen before in this run.

    Check and insert happen in one synchronous step, so interleaved
    coroutines cannot receive the same value.
    """

    def __init__(self, seen: Iterable[str] = ()):
        self._seen: Set[str] = {value for value in seen if value}

    def __contains__(self, value: str) -> bool:
        return value in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def reserve(self, value: str) -> bool:
        if not value or value in self._seen:
            return False
        self._seen.add(value)
        return True

    def generate(self) -> str:
        while True:
            candidate = str(uuid.uuid4())
            if self.reserve(candidate):
                return candidate


@dataclass(frozen=True)
class RunContext:
    """Read-only indices for one fusion run."""

    config: FusionConfig
    identities_by_id: Mapping[str, IdentityDocument]
    accounts_by_id: Mapping[str, SourceAccount]
    accounts_by_identity: Mapping[str, List[SourceAccount]]
    fusion_accounts: Sequence[FusionAccount]
    fusion_accounts_by_identity: Mapping[str, FusionAccount]
    reviewers_by_source: Mapping[str, List[str]]
    uuids: UuidPool
    unique_ids: UniqueIdGenerator
    schema_attributes: Optional[Sequence[str]] = None
    last_aggregation: Optional[datetime] = None

    @property
    def identities(self) -> List[IdentityDocument]:
        return list(self.identities_by_id.values())

    @property
    def uncorrelated_accounts(self) -> List[SourceAccount]:
        """Contributing-source accounts no fusion account has claimed yet."""
        claimed = {acct_id for fa in self.fusion_accounts for acct_id in fa.accounts}
        return [
            acct
            for acct in self.accounts_by_id.values()
            if acct.is_uncorrelated and acct.id not in claimed
        ]

    def reviewers_for(self, source: SourceAccount) -> List[str]:
        for key in (source.source_id, source.source_name):
            if key and self.reviewers_by_source.get(key):
                return list(self.reviewers_by_source[key])
        return []

    @classmethod
    def build(
        cls,
        config: FusionConfig,
        identities: Iterable[IdentityDocument],
        accounts: Iterable[SourceAccount],
        fusion_accounts: Iterable[FusionAccount],
        schema_attributes: Optional[Sequence[str]] = None,
        last_aggregation: Optional[datetime] = None,
    ) -> "RunContext":
        """
        Build indices from freshly fetched platform data.

        Args:
            config: Run configuration
            identities: All identities considered for matching
            accounts: Accounts of the contributing sources
            fusion_accounts: Accounts previously emitted by the fusion source
            schema_attributes: Target attribute names of the fusion schema
            last_aggregation: Completion time of the last fusion aggregation

        Returns:
            A frozen RunContext
        """
        identities_by_id = {identity.id: identity for identity in identities}

        contributing = set(config.sources)
        accounts_by_id: Dict[str, SourceAccount] = {}
        accounts_by_identity: Dict[str, List[SourceAccount]] = {}
        for acct in accounts:
            if contributing and acct.source_name not in contributing:
                continue
            accounts_by_id[acct.id] = acct
            if acct.identity_id:
                accounts_by_identity.setdefault(acct.identity_id, []).append(acct)

        fusion_list = list(fusion_accounts)
        fusion_by_identity: Dict[str, FusionAccount] = {}
        reviewers: Dict[str, List[str]] = {}
        uuids = UuidPool()
        existing_ids: List[str] = []
        for fa in fusion_list:
            if not uuids.reserve(fa.uuid):
                # Missing or duplicated UUIDs get a fresh one.
                fa.uuid = uuids.generate()
                logger.warning(f"Fusion account {fa.unique_id} had no unique UUID, assigned {fa.uuid}")
            existing_ids.append(fa.unique_id)
            if fa.identity_id:
                fusion_by_identity[fa.identity_id] = fa
                if fa.has_status(STATUS_REVIEWER):
                    for source_key in fa.actions:
                        reviewers.setdefault(source_key, []).append(fa.identity_id)

        if config.uid_scope == UniqueIdScope.TENANT:
            existing_ids.extend(identity.name for identity in identities_by_id.values() if identity.name)
        unique_ids = UniqueIdGenerator(config, existing=[uid for uid in existing_ids if uid])

        logger.info(
            f"Run context: {len(identities_by_id)} identities, {len(accounts_by_id)} accounts, "
            f"{len(fusion_list)} fusion accounts, {len(reviewers)} reviewed sources"
        )
        return cls(
            config=config,
            identities_by_id=MappingProxyType(identities_by_id),
            accounts_by_id=MappingProxyType(accounts_by_id),
            accounts_by_identity=MappingProxyType(accounts_by_identity),
            fusion_accounts=tuple(fusion_list),
            fusion_accounts_by_identity=MappingProxyType(fusion_by_identity),
            reviewers_by_source=MappingProxyType(reviewers),
            uuids=uuids,
            unique_ids=unique_ids,
            schema_attributes=tuple(schema_attributes) if schema_attributes is not None else None,
            last_aggregation=last_aggregation,
        )
