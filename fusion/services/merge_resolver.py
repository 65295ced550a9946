"""
Attribute merge resolution.

Consolidates attribute values from a fusion account's contributing source
accounts into one canonical attribute set, one target attribute at a time:

- first:       first non-empty value in source precedence order
- source:      the value from one named source only
- multi:       every value from every source, deduplicated and sorted
- concatenate: like multi, joined as "[a] [b]"

Lifecycle attributes (uniqueID, uuid, statuses, ...) are never computed
here; they always pass through from the fusion account itself.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from fusion.core.attributes import attr_concat, flatten_values, get_attribute_value, is_valid_value
from fusion.core.config import FusionConfig, MergeStrategy
from fusion.core.models import RESERVED_ATTRIBUTES, FusionAccount, SourceAccount

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    """Resolved attributes plus the contributing-sources summary."""

    attributes: Dict[str, Any] = field(default_factory=dict)
    sources: str = ""
    unresolved: List[str] = field(default_factory=list)
    skipped_accounts: List[str] = field(default_factory=list)


class MergeResolver:
    """Computes merged attributes for a fusion account from its source accounts."""

    def __init__(self, config: FusionConfig):
        self.config = config

    def order_by_precedence(self, accounts: Iterable[SourceAccount]) -> List[SourceAccount]:
        """
        Sort accounts by configured source order.

        Accounts from sources that are not configured contributors are dropped.
        Within one source the incoming order is kept.
        """
        accounts = list(accounts)
        ordered: List[SourceAccount] = []
        for source_name in self.config.sources:
            ordered.extend(acct for acct in accounts if acct.source_name == source_name)
        return ordered

    def target_attributes(
        self, schema_attributes: Optional[Sequence[str]], accounts: Sequence[SourceAccount]
    ) -> List[str]:
        if schema_attributes is not None:
            names = list(schema_attributes)
        else:
            names = [rule.identity for rule in self.config.merging_map]
            for acct in accounts:
                for name in (acct.attributes or {}):
                    if name not in names:
                        names.append(name)
        return [name for name in names if name not in RESERVED_ATTRIBUTES]

    def resolve(
        self,
        source_accounts: Iterable[SourceAccount],
        schema_attributes: Optional[Sequence[str]] = None,
    ) -> MergeResult:
        """
        Resolve merged attributes.

        Args:
            source_accounts: Current contributing accounts (any order)
            schema_attributes: Target attribute names; defaults to the merge
                rules plus every attribute seen on the accounts

        Returns:
            MergeResult with resolved attributes and the sources summary
        """
        result = MergeResult()
        usable: List[SourceAccount] = []
        for acct in self.order_by_precedence(source_accounts):
            if acct.attributes is None:
                logger.warning(
                    f"Account {acct.id} from {acct.source_name} has no attributes, skipping"
                )
                result.skipped_accounts.append(acct.id)
                continue
            usable.append(acct)

        for attribute in self.target_attributes(schema_attributes, usable):
            value = self.resolve_attribute(attribute, usable)
            if is_valid_value(value):
                result.attributes[attribute] = value
            else:
                result.unresolved.append(attribute)

        contributing: List[str] = []
        for acct in usable:
            if acct.source_name not in contributing:
                contributing.append(acct.source_name)
        result.sources = " ".join(f"[{name}]" for name in contributing)
        return result

    def resolve_attribute(self, attribute: str, accounts: Sequence[SourceAccount]) -> Any:
        """Resolve one target attribute from accounts already in precedence order."""
        rule = self.config.rule_for(attribute)
        candidates = rule.candidates() if rule else [attribute]
        strategy = self.config.strategy_for(attribute)

        if strategy == MergeStrategy.FIRST:
            for acct in accounts:
                values = _first_candidate_values(acct, candidates)
                if values:
                    return _single_or_list(values)
            return None

        if strategy == MergeStrategy.SOURCE:
            target_source = rule.source if rule else None
            for acct in accounts:
                if acct.source_name != target_source:
                    continue
                # Stop at the named source even when it has nothing.
                return _single_or_list(_first_candidate_values(acct, candidates))
            return None

        collected: List[str] = []
        for acct in accounts:
            for candidate in candidates:
                collected.extend(flatten_values(get_attribute_value(acct.attributes, candidate)))

        if not collected:
            return None
        if strategy == MergeStrategy.CONCATENATE:
            return attr_concat(collected)
        return sorted(set(collected))

    def apply(self, fusion_account: FusionAccount, result: MergeResult) -> None:
        """
        Write a merge result onto a fusion account.

        Unresolved attributes keep their previous value unless delete_empty is
        configured, in which case they are removed.
        """
        for name, value in result.attributes.items():
            fusion_account.attributes[name] = value
        if self.config.delete_empty:
            for name in result.unresolved:
                fusion_account.attributes.pop(name, None)
        fusion_account.sources = result.sources


def _first_candidate_values(account: SourceAccount, candidates: Sequence[str]) -> List[str]:
    for candidate in candidates:
        values = flatten_values(get_attribute_value(account.attributes, candidate))
        if values:
            return values
    return []


def _single_or_list(values: List[str]) -> Any:
    if not values:
        return None
    if len(values) == 1:
        return values[0]
    return values
