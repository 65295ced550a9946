"""
Run error accumulation and owner notification.

Non-fatal problems found while processing (failed correlations, refresh
errors, unreachable identities) are collected during the run and sent to
the fusion source owner in one message at the end, instead of failing the
run.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fusion.core.attributes import first_valid_attribute

logger = logging.getLogger(__name__)


@dataclass
class RunError:
    message: str
    context: Optional[str] = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __str__(self) -> str:
        prefix = f"[{self.context}] " if self.context else ""
        return f"{prefix}{self.message}"


class ErrorCollector:
    """Collects non-fatal errors and notifies the source owner once."""

    def __init__(self):
        self.errors: List[RunError] = []

    def __len__(self) -> int:
        return len(self.errors)

    def handle_error(self, message: str, context: Optional[str] = None) -> None:
        """Log an error and keep it for the end-of-run notification."""
        error = RunError(message=message, context=context)
        logger.error(str(error))
        self.errors.append(error)

    def build_message(self, source_name: str) -> Dict[str, Any]:
        lines = [f"- {error.occurred_at:%Y-%m-%d %H:%M:%S} {error}" for error in self.errors]
        return {
            "subject": f"Identity fusion errors for {source_name}",
            "body": f"{len(self.errors)} errors during the last run:\n" + "\n".join(lines),
        }

    async def notify_owner(
        self,
        client: Any,
        owner: Optional[Dict[str, Any]],
        workflow_name: str,
        source_name: str,
    ) -> bool:
        """
        Send the accumulated errors to the owner through a workflow.

        Args:
            client: Platform client (list_workflows, test_workflow)
            owner: Owner identity document
            workflow_name: Name of the email workflow
            source_name: Fusion source name for the subject line

        Returns:
            True if a notification was sent
        """
        if not self.errors:
            return False

        email = first_valid_attribute((owner or {}).get("attributes"), "email")
        if not email:
            logger.warning("Source owner has no email address, run errors not sent")
            return False

        workflows = await client.list_workflows() or []
        workflow = next((wf for wf in workflows if wf.get("name") == workflow_name), None)
        if workflow is None:
            logger.warning(f"Workflow '{workflow_name}' not found, run errors not sent")
            return False

        payload = self.build_message(source_name)
        payload["recipients"] = [email]
        await client.test_workflow(workflow["id"], payload)
        logger.info(f"Sent {len(self.errors)} run errors to {email}")
        return True
