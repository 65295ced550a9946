"""
End-to-end fusion run.

1. Optionally force aggregation of the contributing sources.
2. Load identities, contributing accounts, existing fusion accounts, the
   fusion schema and the last aggregation time; freeze them in a RunContext.
3. Apply answered review forms and delete the resolved ones.
4. Classify every other uncorrelated account (auto-merge, review, or new).
5. Stream every fusion account in batches: repair correlation, decide
   whether a refresh is due, re-merge attributes, emit.
6. Send accumulated non-fatal errors to the source owner.
"""

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Set

from fusion.core.api_errors import ConfigurationError, NotFoundError
from fusion.core.config import FusionConfig
from fusion.core.models import (
    REVIEW_FORM_ACCOUNT_KEY,
    REVIEW_FORM_DECISION_KEY,
    REVIEW_FORM_PREFIX,
    STATUS_ORPHAN,
    AccountAnalysis,
    FusionAccount,
    IdentityDocument,
    SourceAccount,
    parse_timestamp,
)
from fusion.matching.fuzzy_matcher import SimilarityScorer
from fusion.services.correlation_manager import CorrelationManager
from fusion.services.merge_resolver import MergeResolver
from fusion.services.notifications import ErrorCollector
from fusion.services.refresh_planner import RefreshPlanner
from fusion.services.review_coordinator import OutcomeKind, ReviewCase, ReviewCoordinator, ReviewOutcome
from fusion.services.run_context import RunContext

logger = logging.getLogger(__name__)

BATCH_SIZE = 50
CHUNK_SIZE = 25

# Instance states that carry a reviewer answer
ANSWERED_STATES = ("COMPLETED", "IN_PROGRESS")


def chunked(items: Sequence[Any], size: int) -> List[Sequence[Any]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class FusionRun:
    """
    One fusion run against the identity platform.

    Args:
        client: IdentityPlatformClient (or compatible)
        config: Run configuration
        scorer: Optional similarity scorer override
        batch_size: Accounts emitted per batch
        chunk_size: Accounts processed concurrently within a batch
    """

    AGGREGATION_POLL_INTERVAL = 5.0
    AGGREGATION_MAX_POLLS = 60

    def __init__(
        self,
        client: Any,
        config: FusionConfig,
        scorer: Optional[SimilarityScorer] = None,
        batch_size: int = BATCH_SIZE,
        chunk_size: int = CHUNK_SIZE,
    ):
        if batch_size < 1 or chunk_size < 1:
            raise ValueError("batch_size and chunk_size must be positive")
        self.client = client
        self.config = config
        self.batch_size = batch_size
        self.chunk_size = chunk_size
        self.errors = ErrorCollector()
        self.resolver = MergeResolver(config)
        self.reviewer = ReviewCoordinator(config, client=client, scorer=scorer)
        self.analyses: List[AccountAnalysis] = []
        self.review_cases: List[ReviewCase] = []
        self.created: List[FusionAccount] = []
        # Accounts decided by a reviewer this run or still awaiting one
        self._settled: Set[str] = set()
        self.decisions_applied = 0
        self._source_ids: Dict[str, str] = {}

    # =========================================================================
    # Preparation
    # =========================================================================

    async def _resolve_source_ids(self) -> Dict[str, str]:
        sources = await self.client.list_sources()
        self._source_ids = {source["name"]: source["id"] for source in sources if source.get("name")}
        missing = [name for name in self.config.sources if name not in self._source_ids]
        if missing:
            raise NotFoundError("Contributing source not found", resource_id=", ".join(missing))
        return self._source_ids

    async def _latest_aggregation(self, source_name: Optional[str]) -> Optional[Any]:
        if not source_name:
            return None
        event = await self.client.get_latest_account_aggregation(source_name)
        return parse_timestamp(event.get("created")) if event else None

    async def force_aggregation(self) -> List[str]:
        """
        Aggregate contributing sources whose data predates their config.

        Triggers every stale source first, then polls each one until a newer
        aggregation completes or polling gives up.

        Returns:
            Names of the sources that were aggregated
        """
        if not self._source_ids:
            await self._resolve_source_ids()

        triggered: Dict[str, Any] = {}
        for name in self.config.sources:
            source = await self.client.get_source(self._source_ids[name])
            latest = await self._latest_aggregation(name)
            modified = parse_timestamp((source or {}).get("modified"))
            if latest is not None and modified is not None and latest >= modified:
                continue
            logger.info(f"Forcing aggregation of {name}")
            await self.client.aggregate_accounts(self._source_ids[name])
            triggered[name] = latest

        for name, previous in triggered.items():
            for _ in range(self.AGGREGATION_MAX_POLLS):
                await asyncio.sleep(self.AGGREGATION_POLL_INTERVAL)
                latest = await self._latest_aggregation(name)
                if latest is not None and (previous is None or latest > previous):
                    logger.info(f"Aggregation of {name} completed")
                    break
            else:
                self.errors.handle_error(f"Aggregation of {name} did not complete in time", "aggregation")
        return list(triggered)

    async def load_context(self) -> RunContext:
        """Fetch everything the run needs and build the frozen context."""
        if not self.config.source_id:
            raise ConfigurationError("Fusion source id is required", missing_config="source_id")
        if not self._source_ids:
            await self._resolve_source_ids()

        identities_task = self.client.list_identities()
        fusion_task = self.client.list_accounts_by_source(self.config.source_id)
        schema_task = self.client.list_source_schemas(self.config.source_id)
        aggregation_task = self._latest_aggregation(self.config.source_name)
        account_tasks = [
            self.client.list_accounts_by_source(self._source_ids[name]) for name in self.config.sources
        ]
        identities, fusion_raw, schemas, last_aggregation, *account_pages = await asyncio.gather(
            identities_task, fusion_task, schema_task, aggregation_task, *account_tasks
        )

        accounts = [SourceAccount.from_api(raw) for page in account_pages for raw in page or []]
        fusion_accounts = [
            FusionAccount.from_api(raw, max_history=self.config.max_history_messages)
            for raw in fusion_raw or []
        ]
        return RunContext.build(
            self.config,
            identities=[IdentityDocument.from_api(raw) for raw in identities or []],
            accounts=accounts,
            fusion_accounts=fusion_accounts,
            schema_attributes=_schema_attribute_names(schemas),
            last_aggregation=last_aggregation,
        )

    async def prepare(self) -> RunContext:
        if self.config.force_aggregation:
            await self.force_aggregation()
        return await self.load_context()

    # =========================================================================
    # Uncorrelated accounts
    # =========================================================================

    async def _process_one(self, account: SourceAccount, context: RunContext) -> Optional[ReviewOutcome]:
        try:
            outcome = await self.reviewer.process(account, context)
        except ConfigurationError:
            raise
        except Exception as e:
            self.errors.handle_error(f"Failed to process account {account.id}: {e}", "uncorrelated")
            self.analyses.append(self.reviewer.analyze(account, error=str(e)))
            return None
        self.analyses.append(self.reviewer.analyze(account, outcome))
        return outcome

    async def process_uncorrelated(self, context: RunContext) -> List[ReviewOutcome]:
        """
        Classify every uncorrelated account, chunk by chunk.

        Raises:
            ConfigurationError: A review case is needed but no owner is configured
        """
        pending = [acct for acct in context.uncorrelated_accounts if acct.id not in self._settled]
        logger.info(f"Processing {len(pending)} uncorrelated accounts")
        outcomes: List[ReviewOutcome] = []
        for chunk in chunked(pending, self.chunk_size):
            results = await asyncio.gather(*(self._process_one(acct, context) for acct in chunk))
            outcomes.extend(outcome for outcome in results if outcome is not None)

        for outcome in outcomes:
            if outcome.kind == OutcomeKind.NEW and outcome.fusion_account is not None:
                self.created.append(outcome.fusion_account)
            elif outcome.kind == OutcomeKind.REVIEW and outcome.review_case is not None:
                self.review_cases.append(outcome.review_case)

        await self.publish_review_cases(self.review_cases)
        return outcomes

    async def publish_review_cases(self, cases: Sequence[ReviewCase]) -> int:
        """Create a form and form instance per case, skipping forms already open."""
        if not cases:
            return 0
        existing = {form.get("name") for form in await self.client.list_forms() or []}
        published = 0
        for case in cases:
            definition = case.to_form_definition(self.config.owner_id)
            if definition["name"] in existing:
                continue
            try:
                form = await self.client.create_form(definition)
                await self.client.create_form_instance(
                    form["id"], case.reviewers, case.form_input()
                )
            except Exception as e:
                self.errors.handle_error(f"Failed to publish review for {case.name}: {e}", "review")
                continue
            published += 1
        logger.info(f"Published {published} review forms")
        return published

    # =========================================================================
    # Review decisions
    # =========================================================================

    def _reviewer_name(self, instance: Dict[str, Any], context: RunContext) -> str:
        recipients = instance.get("recipients") or []
        reviewer_id = recipients[0].get("id") if recipients else None
        identity = context.identities_by_id.get(reviewer_id or "")
        if identity is not None:
            return identity.display_name or identity.name or identity.id
        return reviewer_id or "unknown reviewer"

    async def _delete_review_form(self, form: Dict[str, Any]) -> None:
        try:
            await self.client.delete_form(form["id"])
        except Exception as e:
            self.errors.handle_error(f"Failed to delete review form {form.get('name')}: {e}", "review")

    async def process_review_decisions(self, context: RunContext) -> int:
        """
        Apply answered review forms and clean them up.

        A form with an answered instance is applied and deleted. A form whose
        instances were all cancelled, or whose account is gone, is deleted so
        a new one can be issued later. Forms still waiting for an answer are
        kept and their accounts are left alone this run.

        Returns:
            Number of decisions applied
        """
        forms = {
            form["id"]: form
            for form in await self.client.list_forms() or []
            if form.get("id") and (form.get("name") or "").startswith(REVIEW_FORM_PREFIX)
        }
        if not forms:
            return 0

        instances_by_form: Dict[str, List[Dict[str, Any]]] = {}
        for instance in await self.client.list_form_instances() or []:
            if instance.get("formDefinitionId") in forms:
                instances_by_form.setdefault(instance["formDefinitionId"], []).append(instance)

        uncorrelated = {acct.id for acct in context.uncorrelated_accounts}
        applied = 0
        for form_id, form in forms.items():
            instances = sorted(instances_by_form.get(form_id, []), key=lambda i: i.get("modified") or "")
            if not instances:
                continue

            account_id = None
            answer = None
            for instance in instances:
                account_id = account_id or _review_account_id(instance)
                decision = _review_decision(instance)
                if answer is None and decision and instance.get("state") in ANSWERED_STATES:
                    answer = (instance, decision)

            if answer is not None:
                instance, decision = answer
                account = context.accounts_by_id.get(account_id or "")
                if account is None or account.id not in uncorrelated:
                    logger.info(f"Review form {form.get('name')} answered for an account no longer pending")
                else:
                    try:
                        outcome = await self.reviewer.apply_review_decision(
                            account, decision, self._reviewer_name(instance, context), context
                        )
                    except Exception as e:
                        self.errors.handle_error(
                            f"Failed to apply review decision for {account.id}: {e}", "review"
                        )
                        continue
                    if outcome.kind == OutcomeKind.NEW and outcome.fusion_account is not None:
                        self.created.append(outcome.fusion_account)
                    self._settled.add(account.id)
                    applied += 1
                await self._delete_review_form(form)
            elif all(instance.get("state") == "CANCELLED" for instance in instances):
                logger.info(f"Review form {form.get('name')} was cancelled")
                await self._delete_review_form(form)
            elif account_id and account_id not in context.accounts_by_id:
                logger.info(f"Account {account_id} under review no longer exists")
                await self._delete_review_form(form)
            elif account_id:
                self._settled.add(account_id)

        self.decisions_applied += applied
        logger.info(f"Applied {applied} review decisions")
        return applied

    # =========================================================================
    # Fusion accounts
    # =========================================================================

    async def refresh_fusion_account(
        self,
        fusion_account: FusionAccount,
        context: RunContext,
        planner: RefreshPlanner,
        correlation: CorrelationManager,
    ) -> FusionAccount:
        identity = context.identities_by_id.get(fusion_account.identity_id or "")
        if identity is not None:
            known = [acct_id for acct_id in identity.account_ids if acct_id in context.accounts_by_id]
        else:
            known = list(fusion_account.accounts)

        drift = planner.detect_membership_drift(fusion_account, known)
        result = await correlation.repair(fusion_account, known)
        for account_id in result.failed:
            self.errors.handle_error(
                f"Failed to correlate account {account_id} for {fusion_account.unique_id}", "correlation"
            )

        if fusion_account.accounts:
            fusion_account.remove_status(STATUS_ORPHAN)
        else:
            fusion_account.add_status(STATUS_ORPHAN)

        decision = planner.plan(fusion_account, result.source_accounts, drift)
        if decision.refresh:
            try:
                merged = self.resolver.resolve(result.source_accounts, context.schema_attributes)
                self.resolver.apply(fusion_account, merged)
                fusion_account.needs_refresh = False
                logger.debug(f"Refreshed {fusion_account.unique_id}: {decision.reason}")
            except Exception as e:
                self.errors.handle_error(
                    f"Failed to refresh {fusion_account.unique_id}: {e}", "refresh"
                )
        return fusion_account

    async def _safe_refresh(self, fusion_account, context, planner, correlation) -> FusionAccount:
        try:
            return await self.refresh_fusion_account(fusion_account, context, planner, correlation)
        except Exception as e:
            self.errors.handle_error(f"Failed to process {fusion_account.unique_id}: {e}", "refresh")
            return fusion_account

    async def iter_fusion_accounts(self, context: RunContext) -> AsyncIterator[List[Dict[str, Any]]]:
        """
        Yield connector output one batch at a time.

        Within a chunk accounts are processed concurrently; batches run
        sequentially and keep input order.
        """
        planner = RefreshPlanner(self.config, last_aggregation=context.last_aggregation)
        correlation = CorrelationManager(self.client, context.accounts_by_id)
        accounts = list(context.fusion_accounts) + self.created

        for number, batch in enumerate(chunked(accounts, self.batch_size), start=1):
            refreshed: List[FusionAccount] = []
            for chunk in chunked(batch, self.chunk_size):
                refreshed.extend(
                    await asyncio.gather(
                        *(self._safe_refresh(fa, context, planner, correlation) for fa in chunk)
                    )
                )
            correlation.log_and_reset()
            logger.debug(f"Batch {number}: {len(refreshed)} fusion accounts")
            yield [fa.to_output() for fa in refreshed]

    async def run(self) -> AsyncIterator[Dict[str, Any]]:
        """Execute a full run, streaming fusion accounts as they are ready."""
        started = time.monotonic()
        context = await self.prepare()
        await self.process_review_decisions(context)
        await self.process_uncorrelated(context)

        emitted = 0
        async for batch in self.iter_fusion_accounts(context):
            for item in batch:
                emitted += 1
                yield item

        logger.info(f"Fusion run emitted {emitted} accounts in {time.monotonic() - started:.1f}s")
        await self.notify_errors()

    async def notify_errors(self) -> bool:
        if not self.errors or not self.config.owner_id:
            return False
        try:
            owner = await self.client.get_identity(self.config.owner_id)
            return await self.errors.notify_owner(
                self.client, owner, self.config.email_workflow, self.config.source_name or "fusion"
            )
        except Exception as e:
            logger.error(f"Failed to send run errors to owner: {e}")
            return False

    def build_report(self) -> Dict[str, Any]:
        """Per-account analysis of uncorrelated accounts plus run totals."""
        stats = None
        if hasattr(self.client, "get_queue_stats"):
            stats = self.client.get_queue_stats()
        return {
            "accounts": [analysis.to_dict() for analysis in self.analyses],
            "totals": {
                "analyzed": len(self.analyses),
                "with_matches": sum(1 for analysis in self.analyses if analysis.matches),
                "review_cases": len(self.review_cases),
                "created": len(self.created),
                "review_decisions": self.decisions_applied,
            },
            "errors": [str(error) for error in self.errors.errors],
            "queue_stats": stats,
        }


def _schema_attribute_names(schemas: Optional[List[Dict[str, Any]]]) -> Optional[List[str]]:
    if not schemas:
        return None
    account_schema = next(
        (schema for schema in schemas if schema.get("name") == "account"), schemas[0]
    )
    names = [attr["name"] for attr in account_schema.get("attributes") or [] if attr.get("name")]
    return names or None


def _input_value(value: Any) -> Any:
    # Form inputs come back either bare or as {"value": ...}
    if isinstance(value, dict):
        return value.get("value")
    return value


def _review_account_id(instance: Dict[str, Any]) -> Optional[str]:
    value = _input_value((instance.get("formInput") or {}).get(REVIEW_FORM_ACCOUNT_KEY))
    return str(value) if value else None


def _review_decision(instance: Dict[str, Any]) -> Optional[str]:
    value = (instance.get("formData") or {}).get(REVIEW_FORM_DECISION_KEY)
    if isinstance(value, list):
        value = value[0] if value else None
    value = _input_value(value)
    return str(value) if value else None
