"""
Domain models for the fusion engine.

All of these are rebuilt from the identity platform on every run; nothing
here is persisted locally.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from fusion.core.attributes import Attributes, attr_split, is_valid_value

logger = logging.getLogger(__name__)

# Lifecycle-owned attributes; MergeResolver never computes these.
RESERVED_ATTRIBUTES = (
    "uniqueID",
    "uuid",
    "statuses",
    "actions",
    "accounts",
    "history",
    "reviews",
    "sources",
)


# =============================================================================
# Status catalog
# =============================================================================

STATUS_AUTHORIZED = "authorized"
STATUS_AUTO = "auto"
STATUS_BASELINE = "baseline"
STATUS_MANUAL = "manual"
STATUS_ORPHAN = "orphan"
STATUS_UNMATCHED = "unmatched"
STATUS_EDITED = "edited"
STATUS_REVIEWER = "reviewer"
STATUS_REQUESTED = "requested"
STATUS_UNCORRELATED = "uncorrelated"

STATUSES: Dict[str, str] = {
    STATUS_AUTHORIZED: "A source account was manually correlated by a reviewer",
    STATUS_AUTO: "An identical match was found for the source account",
    STATUS_BASELINE: "Pre-existing identity",
    STATUS_MANUAL: "A new account was manually approved by a reviewer",
    STATUS_ORPHAN: "No source accounts left",
    STATUS_UNMATCHED: "No match found for the source account",
    STATUS_EDITED: "Manually edited; no longer updated from source accounts",
    STATUS_REVIEWER: "An identity deduplication reviewer of any source",
    STATUS_REQUESTED: "Account was requested",
    STATUS_UNCORRELATED: "Account has source accounts pending correlation",
}

REVIEW_FORM_PREFIX = "Identity Merging - "
REVIEW_FORM_ACCOUNT_KEY = "account"
REVIEW_FORM_DECISION_KEY = "identities"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp from the platform into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.warning(f"Unparseable timestamp: {value!r}")
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _as_list(value: Any) -> List[str]:
    if not is_valid_value(value):
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(item) for item in value if is_valid_value(item)]
    return attr_split(str(value))


def _history_list(value: Any) -> List[str]:
    # History messages contain bracketed source names, never split them.
    if not is_valid_value(value):
        return []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if is_valid_value(item)]
    return [str(value)]


# =============================================================================
# Accounts and identities
# =============================================================================


@dataclass(frozen=True)
class SourceAccount:
    """A raw account from one contributing source, as seen this run."""

    id: str
    source_name: str
    identity_id: Optional[str] = None
    attributes: Optional[Attributes] = None
    modified: Optional[datetime] = None
    native_identity: Optional[str] = None
    name: Optional[str] = None
    source_id: Optional[str] = None
    uncorrelated: bool = False

    @property
    def is_uncorrelated(self) -> bool:
        return self.uncorrelated or not self.identity_id

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "SourceAccount":
        source = data.get("source") or {}
        return cls(
            id=data["id"],
            source_name=data.get("sourceName") or source.get("name") or "",
            source_id=data.get("sourceId") or source.get("id"),
            identity_id=data.get("identityId") or (data.get("identity") or {}).get("id"),
            attributes=data.get("attributes"),
            modified=parse_timestamp(data.get("modified")),
            native_identity=data.get("nativeIdentity"),
            name=data.get("name"),
            uncorrelated=bool(data.get("uncorrelated", False)),
        )


@dataclass(frozen=True)
class IdentityDocument:
    """An identity and the ids of the accounts it currently owns."""

    id: str
    name: str = ""
    display_name: Optional[str] = None
    attributes: Attributes = field(default_factory=dict)
    account_ids: List[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "IdentityDocument":
        return cls(
            id=data["id"],
            name=data.get("name") or "",
            display_name=data.get("displayName"),
            attributes=data.get("attributes") or {},
            account_ids=[acct["id"] for acct in data.get("accounts") or [] if acct.get("id")],
        )


@dataclass
class FusionAccount:
    """
    The deduplicated identity record.

    Mutated by MergeResolver (attributes), CorrelationManager (accounts)
    and lifecycle operations (statuses, history). Never deleted here.
    """

    unique_id: str
    uuid: str
    accounts: List[str] = field(default_factory=list)
    statuses: Set[str] = field(default_factory=set)
    actions: Set[str] = field(default_factory=set)
    reviews: Set[str] = field(default_factory=set)
    history: List[str] = field(default_factory=list)
    attributes: Attributes = field(default_factory=dict)
    sources: str = ""
    identity_id: Optional[str] = None
    modified: Optional[datetime] = None
    disabled: bool = False
    needs_refresh: bool = False
    max_history: int = 10

    def has_status(self, status: str) -> bool:
        return status in self.statuses

    def add_status(self, status: str, message: Optional[str] = None) -> None:
        self.statuses.add(status)
        if message:
            self.add_history(message)

    def remove_status(self, status: str, message: Optional[str] = None) -> bool:
        if status not in self.statuses:
            return False
        self.statuses.discard(status)
        if message:
            self.add_history(message)
        return True

    def add_history(self, message: str, when: Optional[datetime] = None) -> None:
        """Append a dated history entry, keeping only the newest max_history."""
        when = when or datetime.now(timezone.utc)
        self.history.append(f"{when:%Y-%m-%d %H:%M:%S}: {message}")
        if len(self.history) > self.max_history:
            del self.history[: len(self.history) - self.max_history]

    def add_account(self, account_id: str) -> bool:
        if account_id in self.accounts:
            return False
        self.accounts.append(account_id)
        return True

    def force_refresh(self) -> None:
        """Force a re-merge on the next refresh regardless of timestamps."""
        self.needs_refresh = True

    def to_output(self) -> Dict[str, Any]:
        """Connector output representation; lifecycle attributes pass through."""
        attributes = {
            key: value for key, value in self.attributes.items() if key not in RESERVED_ATTRIBUTES
        }
        attributes.update(
            {
                "uniqueID": self.unique_id,
                "uuid": self.uuid,
                "accounts": list(self.accounts),
                "statuses": sorted(self.statuses),
                "actions": sorted(self.actions),
                "reviews": sorted(self.reviews),
                "history": list(self.history),
                "sources": self.sources,
            }
        )
        return {
            "key": self.uuid,
            "name": self.unique_id,
            "identity_id": self.identity_id,
            "disabled": self.disabled,
            "attributes": attributes,
        }

    @classmethod
    def from_api(cls, data: Dict[str, Any], max_history: int = 10) -> "FusionAccount":
        """Rebuild from an account previously emitted by the fusion source."""
        attributes = dict(data.get("attributes") or {})
        return cls(
            unique_id=attributes.get("uniqueID") or data.get("nativeIdentity") or data.get("name") or "",
            uuid=attributes.get("uuid") or "",
            accounts=_as_list(attributes.get("accounts")),
            statuses=set(_as_list(attributes.get("statuses"))),
            actions=set(_as_list(attributes.get("actions"))),
            reviews=set(_as_list(attributes.get("reviews"))),
            history=_history_list(attributes.get("history")),
            attributes={k: v for k, v in attributes.items() if k not in RESERVED_ATTRIBUTES},
            sources=attributes.get("sources") or "",
            identity_id=data.get("identityId"),
            modified=parse_timestamp(data.get("modified")),
            disabled=bool(data.get("disabled", False)),
            max_history=max_history,
        )


# =============================================================================
# Matching results
# =============================================================================


@dataclass
class SimilarityMatch:
    """Scores of one uncorrelated account against one candidate identity."""

    identity: IdentityDocument
    scores: Dict[str, float] = field(default_factory=dict)

    @property
    def is_identical(self) -> bool:
        return bool(self.scores) and all(score == 100 for score in self.scores.values())

    @property
    def overall(self) -> float:
        if not self.scores:
            return 0.0
        return sum(self.scores.values()) / len(self.scores)

    def explain(self) -> str:
        parts = ", ".join(f"{name}: {score:.0f}" for name, score in self.scores.items())
        return f"{self.identity.display_name or self.identity.name} ({parts})"


@dataclass
class ReviewCase:
    """
    A pending adjudication for an ambiguous match.

    Owned by the external review workflow once published.
    """

    account: SourceAccount
    attributes: Dict[str, str]
    matches: List[SimilarityMatch]
    reviewers: List[str]
    score_fn: Callable[[str], float]

    @property
    def name(self) -> str:
        return self.account.name or self.account.native_identity or self.account.id

    def form_input(self) -> Dict[str, str]:
        """Values shown to the reviewer; "account" maps the answer back."""
        values = dict(self.attributes)
        values[REVIEW_FORM_ACCOUNT_KEY] = self.account.id
        return values

    def to_form_definition(self, owner_id: str) -> Dict[str, Any]:
        """Form definition payload listing the candidate identities."""
        options = [
            {
                "label": match.explain(),
                "value": match.identity.id,
            }
            for match in self.matches
        ]
        options.append({"label": "This is a new identity", "value": "This is a new identity"})
        return {
            "name": f"{REVIEW_FORM_PREFIX}{self.name} [{self.account.source_name}]",
            "description": "Review potentially duplicated identity",
            "owner": {"type": "IDENTITY", "id": owner_id},
            "formInput": [
                {"type": "STRING", "label": key, "description": str(value)}
                for key, value in self.form_input().items()
            ],
            "formElements": [
                {
                    "id": REVIEW_FORM_DECISION_KEY,
                    "elementType": "SELECT",
                    "key": REVIEW_FORM_DECISION_KEY,
                    "config": {"label": "Identity decision", "options": options},
                    "validations": [{"validationType": "REQUIRED"}],
                }
            ],
            "formConditions": [],
            "usedBy": [],
        }

    def thresholds(self) -> Dict[str, float]:
        return {name: self.score_fn(name) for name in self.attributes}


@dataclass
class AccountAnalysis:
    """Report entry for one uncorrelated account."""

    account_name: str
    source_name: str
    matches: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_name": self.account_name,
            "source_name": self.source_name,
            "matches": list(self.matches),
            "error": self.error,
        }
