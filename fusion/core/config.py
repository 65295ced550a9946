"""
Configuration for the fusion engine.

Two layers:
- Settings: process-level connection and throughput settings loaded from
  environment variables and .env (FUSION_ prefix)
- FusionConfig: the per-run merge/match configuration supplied by the
  connector's source configuration

Key principles:
- Safe defaults for every throughput knob
- Invalid merge configuration fails early with a clear error
"""
import logging
import os
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from fusion.core.api_errors import ConfigurationError

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseSettings):
    """Connection and throughput settings.

    Loads from environment variables and .env file.
    """
    model_config = SettingsConfigDict(
        env_prefix="FUSION_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    base_url: Optional[str] = Field(
        default=None,
        description="Identity platform API base URL, e.g. https://tenant.api.example.com"
    )
    client_id: Optional[str] = Field(default=None, description="OAuth client id")
    client_secret: Optional[str] = Field(default=None, description="OAuth client secret")

    log_level: str = Field(default="INFO", description="Logging level")

    enable_queue: bool = Field(
        default=True,
        description="Route platform calls through the priority execution queue"
    )
    enable_retry: bool = Field(default=True, description="Retry transient failures")

    requests_per_second: float = Field(
        default=10.0,
        gt=0,
        le=1000,
        description="Maximum platform requests per second"
    )
    max_concurrent_requests: Optional[int] = Field(
        default=None,
        ge=1,
        le=500,
        description="Maximum in-flight requests (default: max(10, 2 x rps))"
    )
    max_retries: int = Field(
        default=20,
        ge=0,
        le=100,
        description="Maximum retries for failed platform requests"
    )
    request_timeout: Optional[float] = Field(
        default=None,
        gt=0,
        description="Per-call timeout in seconds (None disables it)"
    )
    page_size: int = Field(
        default=250,
        ge=1,
        le=250,
        description="Page size for list endpoints"
    )
    stats_interval: float = Field(
        default=30.0,
        ge=0,
        description="Seconds between queue statistics log lines (0 disables)"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v_upper

    def require_credentials(self) -> None:
        """
        Ensure platform credentials are configured.

        Call this before opening a platform client.

        Raises:
            ConfigurationError: If base URL, client id or secret is missing
        """
        for name in ("base_url", "client_id", "client_secret"):
            if not getattr(self, name):
                raise ConfigurationError(
                    f"FUSION_{name.upper()} is required to reach the identity platform. "
                    "Set it in your .env file or environment variables.",
                    missing_config=name,
                )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the process settings (loaded once)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset cached settings (for testing)."""
    global _settings
    _settings = None


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Configure root logging from settings (LOG_LEVEL env var wins if set)."""
    level = os.getenv("LOG_LEVEL") or (settings or get_settings()).log_level
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


# =============================================================================
# Run configuration
# =============================================================================


class MergeStrategy(str, Enum):
    FIRST = "first"
    SOURCE = "source"
    MULTI = "multi"
    CONCATENATE = "concatenate"


class UniqueIdScope(str, Enum):
    TENANT = "tenant"
    SOURCE = "source"


class UniqueIdCase(str, Enum):
    SAME = "same"
    LOWER = "lower"
    UPPER = "upper"


class MergingRule(BaseModel):
    """How one fusion attribute is fed from source attributes."""

    identity: str = Field(..., min_length=1, description="Fusion/identity attribute name")
    account: List[str] = Field(
        default_factory=list,
        description="Candidate source attribute names, in preference order"
    )
    attribute_merge: Optional[MergeStrategy] = Field(
        default=None, description="Strategy override for this attribute"
    )
    source: Optional[str] = Field(
        default=None, description="Source name used by the 'source' strategy"
    )
    merging_score: Optional[float] = Field(
        default=None, ge=0, le=100, description="Per-attribute similarity threshold"
    )

    def candidates(self) -> List[str]:
        return self.account or [self.identity]


class FusionConfig(BaseModel):
    """Per-run merge and match configuration."""

    source_id: Optional[str] = Field(default=None, description="Fusion source id")
    source_name: Optional[str] = Field(default=None, description="Fusion source name")
    sources: List[str] = Field(
        default_factory=list, description="Contributing source names in precedence order"
    )
    owner_id: Optional[str] = Field(
        default=None, description="Identity id of the fusion source owner"
    )
    modified: Optional[datetime] = Field(
        default=None, description="Last modification of this configuration"
    )

    merging_is_enabled: bool = Field(default=True)
    merging_attributes: List[str] = Field(
        default_factory=list, description="Attributes compared when matching"
    )
    merging_map: List[MergingRule] = Field(default_factory=list)
    attribute_merge: MergeStrategy = Field(
        default=MergeStrategy.FIRST, description="Default merge strategy"
    )
    global_merging_score: bool = Field(
        default=False, description="Use one overall threshold instead of per attribute"
    )
    merging_score: float = Field(default=90.0, ge=0, le=100)
    global_merging_identical: bool = Field(
        default=False, description="Automatically merge identical matches"
    )
    similarity_algorithm: str = Field(default="levenshtein")

    uid_template: str = Field(default="{displayName}")
    uid_scope: UniqueIdScope = Field(default=UniqueIdScope.TENANT)
    uid_digits: int = Field(default=1, ge=0, le=10)
    uid_case: UniqueIdCase = Field(default=UniqueIdCase.SAME)
    uid_normalize: bool = Field(default=False)
    uid_spaces: bool = Field(default=False, description="Remove whitespace from unique IDs")

    force_aggregation: bool = Field(default=False)
    force_attribute_refresh: bool = Field(default=False)
    max_history_messages: int = Field(default=10, ge=1)
    delete_empty: bool = Field(default=False)
    report_attributes: List[str] = Field(default_factory=list)
    email_workflow: str = Field(
        default="Fusion Email Sender", description="Workflow used to send notifications"
    )

    @field_validator("modified")
    @classmethod
    def ensure_aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode="after")
    def check_source_rules(self) -> "FusionConfig":
        for rule in self.merging_map:
            if rule.attribute_merge == MergeStrategy.SOURCE and not rule.source:
                raise ValueError(
                    f"merging rule for '{rule.identity}' uses the 'source' strategy "
                    "but names no source"
                )
        return self

    @property
    def rules_by_attribute(self) -> Dict[str, MergingRule]:
        return {rule.identity: rule for rule in self.merging_map}

    def rule_for(self, attribute: str) -> Optional[MergingRule]:
        return self.rules_by_attribute.get(attribute)

    def score_for(self, attribute: str) -> float:
        """Similarity threshold for one attribute (per-attribute mode)."""
        rule = self.rule_for(attribute)
        if rule is not None and rule.merging_score is not None:
            return rule.merging_score
        return self.merging_score

    def strategy_for(self, attribute: str) -> MergeStrategy:
        rule = self.rule_for(attribute)
        if rule is not None and rule.attribute_merge is not None:
            return rule.attribute_merge
        return self.attribute_merge
