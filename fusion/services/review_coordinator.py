"""
Match classification and decisioning for uncorrelated accounts.

Each uncorrelated source account is compared against every known identity.
Candidates are evaluated one at a time by small early-return helpers:

- exactly one side has a value: reject (presence mismatch)
- both sides empty: neutral, attribute ignored
- both present: scored 0-100

In per-attribute mode a score under the attribute's threshold rejects the
candidate. In global mode the scores are averaged over every requested
attribute (absent ones count as zero) and compared to one threshold.

A candidate scoring 100 on everything is an identical match; any other
surviving candidate is a similar match.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from fusion.core.api_errors import ConfigurationError, NotFoundError
from fusion.core.attributes import first_valid_attribute, get_attribute_value, normalize_for_comparison
from fusion.core.config import FusionConfig
from fusion.core.models import (
    STATUS_AUTHORIZED,
    STATUS_AUTO,
    STATUS_EDITED,
    STATUS_MANUAL,
    STATUS_UNMATCHED,
    AccountAnalysis,
    FusionAccount,
    IdentityDocument,
    ReviewCase,
    SimilarityMatch,
    SourceAccount,
)
from fusion.matching.fuzzy_matcher import SimilarityScorer
from fusion.services.merge_resolver import MergeResolver
from fusion.services.run_context import RunContext

logger = logging.getLogger(__name__)

NEW_IDENTITY_DECISION = "This is a new identity"
OVERALL_SCORE = "overall"


class OutcomeKind(str, Enum):
    MERGED = "merged"          # appended to an identical identity's fusion account
    CORRELATED = "correlated"  # identical identity without a fusion account
    REVIEW = "review"          # similar matches need a human decision
    NEW = "new"                # no match, new fusion account created


@dataclass(frozen=True)
class CandidateEvaluation:
    """Tagged result of evaluating one identity against one account."""

    accepted: bool
    reason: str = ""
    scores: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def reject(cls, reason: str) -> "CandidateEvaluation":
        return cls(accepted=False, reason=reason)

    @classmethod
    def accept(cls, scores: Dict[str, float]) -> "CandidateEvaluation":
        return cls(accepted=True, scores=scores)


@dataclass
class ReviewOutcome:
    kind: OutcomeKind
    account: SourceAccount
    matches: List[SimilarityMatch] = field(default_factory=list)
    fusion_account: Optional[FusionAccount] = None
    review_case: Optional[ReviewCase] = None
    identity_id: Optional[str] = None
    message: str = ""


class ReviewCoordinator:
    """
    Decides what happens to an account with no identity owner.

    Args:
        config: Run configuration
        client: Platform client (correlate_account) used when an identical
            identity has no fusion account yet
        scorer: Similarity scorer; defaults to the configured algorithm
    """

    def __init__(
        self,
        config: FusionConfig,
        client: Any = None,
        scorer: Optional[SimilarityScorer] = None,
    ):
        self.config = config
        self.client = client
        self.scorer = scorer or SimilarityScorer(config.similarity_algorithm)
        self.resolver = MergeResolver(config)

    # =========================================================================
    # Comparison
    # =========================================================================

    def build_comparable_attributes(self, account: SourceAccount) -> Dict[str, str]:
        """Normalized values of the merging attributes ("" when absent)."""
        comparable: Dict[str, str] = {}
        for name in self.config.merging_attributes:
            rule = self.config.rule_for(name)
            candidates = rule.candidates() if rule else [name]
            raw = first_valid_attribute(account.attributes, *candidates)
            comparable[name] = normalize_for_comparison(raw)
        return comparable

    def compare_attribute(self, account_value: str, identity_value: str) -> Optional[float]:
        """
        Score one attribute pair.

        Returns:
            None when both values are absent, -1.0 when exactly one is
            present, otherwise the 0-100 similarity
        """
        if not account_value and not identity_value:
            return None
        if not account_value or not identity_value:
            return -1.0
        return self.scorer.score_percent(account_value, identity_value)

    def evaluate_candidate(
        self, comparable: Dict[str, str], identity: IdentityDocument
    ) -> CandidateEvaluation:
        if self.config.global_merging_score:
            return self._evaluate_global(comparable, identity)
        return self._evaluate_per_attribute(comparable, identity)

    def _identity_value(self, identity: IdentityDocument, name: str) -> str:
        return normalize_for_comparison(get_attribute_value(identity.attributes, name))

    def _evaluate_per_attribute(
        self, comparable: Dict[str, str], identity: IdentityDocument
    ) -> CandidateEvaluation:
        scores: Dict[str, float] = {}
        for name, account_value in comparable.items():
            score = self.compare_attribute(account_value, self._identity_value(identity, name))
            if score is None:
                continue
            if score < 0:
                return CandidateEvaluation.reject(f"{name}: value present on one side only")
            threshold = self.config.score_for(name)
            if score < threshold:
                return CandidateEvaluation.reject(
                    f"{name}: score {score:.0f} below threshold {threshold:.0f}"
                )
            scores[name] = score
        if not scores:
            return CandidateEvaluation.reject("no attribute could be compared")
        return CandidateEvaluation.accept(scores)

    def _evaluate_global(
        self, comparable: Dict[str, str], identity: IdentityDocument
    ) -> CandidateEvaluation:
        if not comparable:
            return CandidateEvaluation.reject("no merging attributes configured")
        total = 0.0
        for name, account_value in comparable.items():
            score = self.compare_attribute(account_value, self._identity_value(identity, name))
            if score is None:
                continue
            if score < 0:
                return CandidateEvaluation.reject(f"{name}: value present on one side only")
            total += score
        # Divides by every requested attribute, so absent ones count as zero.
        mean = total / len(comparable)
        if mean < self.config.merging_score:
            return CandidateEvaluation.reject(
                f"overall score {mean:.0f} below threshold {self.config.merging_score:.0f}"
            )
        return CandidateEvaluation.accept({OVERALL_SCORE: mean})

    def find_similar_matches(
        self, account: SourceAccount, identities: Iterable[IdentityDocument]
    ) -> List[SimilarityMatch]:
        """
        Every identity that survives evaluation, best first.

        Args:
            account: Uncorrelated account
            identities: Candidate identities

        Returns:
            Matches sorted by mean score, highest first
        """
        comparable = self.build_comparable_attributes(account)
        matches: List[SimilarityMatch] = []
        for identity in identities:
            evaluation = self.evaluate_candidate(comparable, identity)
            if evaluation.accepted:
                matches.append(SimilarityMatch(identity=identity, scores=dict(evaluation.scores)))
        matches.sort(key=lambda match: match.overall, reverse=True)
        return matches

    # =========================================================================
    # Decisioning
    # =========================================================================

    def build_fusion_account(
        self,
        account: SourceAccount,
        context: RunContext,
        status: str,
        message: str,
        identity: Optional[IdentityDocument] = None,
    ) -> FusionAccount:
        """Create a fusion account whose only contributor is account."""
        merged = self.resolver.resolve([account], context.schema_attributes)
        template_values = dict(account.attributes or {})
        template_values.update(merged.attributes)
        unique_id = context.unique_ids.issue(
            template_values, preferred=identity.name if identity else None
        )
        fusion_account = FusionAccount(
            unique_id=unique_id,
            uuid=context.uuids.generate(),
            accounts=[account.id],
            identity_id=identity.id if identity else account.identity_id,
            max_history=self.config.max_history_messages,
        )
        fusion_account.actions.add("fusion")
        self.resolver.apply(fusion_account, merged)
        fusion_account.add_status(status, message)
        return fusion_account

    async def process(self, account: SourceAccount, context: RunContext) -> ReviewOutcome:
        """
        Classify one uncorrelated account and act on it.

        Raises:
            ConfigurationError: Similar matches exist but no reviewer/owner is set
        """
        if not self.config.merging_is_enabled:
            fusion_account = self.build_fusion_account(
                account, context, STATUS_UNMATCHED, "Identity merging not activated"
            )
            return ReviewOutcome(OutcomeKind.NEW, account, fusion_account=fusion_account)

        matches = self.find_similar_matches(account, context.identities)
        identical = next((match for match in matches if match.is_identical), None)

        if identical is not None and self.config.global_merging_identical:
            return await self._merge_identical(account, identical, matches, context)

        if matches:
            case = self.open_review_case(account, matches, context)
            return ReviewOutcome(
                OutcomeKind.REVIEW,
                account,
                matches=matches,
                review_case=case,
                message=f"{len(matches)} similar identities found",
            )

        fusion_account = self.build_fusion_account(
            account, context, STATUS_UNMATCHED, "No matching identity found"
        )
        return ReviewOutcome(OutcomeKind.NEW, account, fusion_account=fusion_account)

    async def _merge_identical(
        self,
        account: SourceAccount,
        match: SimilarityMatch,
        matches: List[SimilarityMatch],
        context: RunContext,
    ) -> ReviewOutcome:
        identity = match.identity
        fusion_account = context.fusion_accounts_by_identity.get(identity.id)
        if fusion_account is not None:
            fusion_account.add_account(account.id)
            fusion_account.add_status(STATUS_AUTO, "Identical match found.")
            fusion_account.remove_status(STATUS_EDITED)
            fusion_account.force_refresh()
            logger.info(f"Account {account.id} auto-merged into {fusion_account.unique_id}")
            return ReviewOutcome(
                OutcomeKind.MERGED,
                account,
                matches=matches,
                fusion_account=fusion_account,
                identity_id=identity.id,
            )

        await self.correlate(account.id, identity.id)
        return ReviewOutcome(
            OutcomeKind.CORRELATED, account, matches=matches, identity_id=identity.id
        )

    async def correlate(self, account_id: str, identity_id: str) -> None:
        if self.client is None:
            raise ConfigurationError("A platform client is required to correlate accounts")
        await self.client.correlate_account(account_id, identity_id)
        logger.info(f"Account {account_id} correlated to identity {identity_id}")

    def open_review_case(
        self, account: SourceAccount, matches: List[SimilarityMatch], context: RunContext
    ) -> ReviewCase:
        if not self.config.owner_id:
            raise ConfigurationError("Source owner is required", missing_config="owner_id")
        reviewers = context.reviewers_for(account) or [self.config.owner_id]
        attributes = {
            name: str(value)
            for name, value in self.build_comparable_attributes(account).items()
        }
        return ReviewCase(
            account=account,
            attributes=attributes,
            matches=matches,
            reviewers=reviewers,
            score_fn=self.config.score_for,
        )

    async def apply_review_decision(
        self,
        account: SourceAccount,
        decision: str,
        reviewer: str,
        context: RunContext,
    ) -> ReviewOutcome:
        """
        Apply a reviewer's answer to a review case.

        Args:
            account: The account that was under review
            decision: NEW_IDENTITY_DECISION or the chosen identity id
            reviewer: Name or id of the reviewer, recorded in history
            context: Run context

        Raises:
            NotFoundError: The chosen identity is unknown
        """
        if decision == NEW_IDENTITY_DECISION:
            fusion_account = self.build_fusion_account(
                account, context, STATUS_MANUAL, f"Set as new identity by {reviewer}"
            )
            return ReviewOutcome(OutcomeKind.NEW, account, fusion_account=fusion_account)

        identity = context.identities_by_id.get(decision)
        if identity is None:
            raise NotFoundError("Identity chosen by reviewer not found", resource_id=decision)

        fusion_account = context.fusion_accounts_by_identity.get(identity.id)
        if fusion_account is None:
            await self.correlate(account.id, identity.id)
            return ReviewOutcome(OutcomeKind.CORRELATED, account, identity_id=identity.id)

        fusion_account.add_account(account.id)
        fusion_account.add_status(
            STATUS_AUTHORIZED,
            f"Account {account.name or account.id} [{account.source_name}] assigned by {reviewer}",
        )
        fusion_account.force_refresh()
        return ReviewOutcome(
            OutcomeKind.MERGED, account, fusion_account=fusion_account, identity_id=identity.id
        )

    def analyze(
        self,
        account: SourceAccount,
        outcome: Optional[ReviewOutcome] = None,
        error: Optional[str] = None,
    ) -> AccountAnalysis:
        """Report entry explaining how an uncorrelated account was classified."""
        analysis = AccountAnalysis(
            account_name=account.name or account.native_identity or account.id,
            source_name=account.source_name,
            error=error,
        )
        if outcome is not None:
            analysis.matches = [match.explain() for match in outcome.matches]
        return analysis
