"""
Unique ID generation for new fusion accounts.

The base ID is rendered from a str.format template over the account's
attributes ("{givenName}.{sn}"). Collisions get a numeric counter, either
where the template places "{counter}" or appended at the end, zero-padded
to the configured number of digits.
"""

import logging
import re
from typing import Any, Dict, Iterable, Optional

from fusion.core.attributes import strip_diacritics
from fusion.core.config import FusionConfig, UniqueIdCase

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s")


class _TemplateValues(dict):
    """Missing template fields render as empty strings."""

    def __missing__(self, key: str) -> str:
        return ""


class UniqueIdGenerator:
    """
    Issues unique IDs within the configured scope.

    issue() checks and records an ID in one synchronous step, so concurrent
    coroutines in the same event loop never receive the same ID.
    """

    def __init__(self, config: FusionConfig, existing: Iterable[str] = ()):
        self.config = config
        self.template = config.uid_template
        if "{counter}" not in self.template:
            self.template += "{counter}"
        self.ids = set(existing)
        self._max_counter: Dict[str, int] = {}

    def _render(self, values: Dict[str, Any], counter: str) -> str:
        context = _TemplateValues(
            {k: (" ".join(map(str, v)) if isinstance(v, list) else v) for k, v in values.items()}
        )
        context["counter"] = counter
        return self._format(self.template.format_map(context))

    def _format(self, value: str) -> str:
        if self.config.uid_normalize:
            value = strip_diacritics(value).replace("'", "")
        if self.config.uid_spaces:
            value = _WHITESPACE.sub("", value)
        if self.config.uid_case == UniqueIdCase.LOWER:
            value = value.lower()
        elif self.config.uid_case == UniqueIdCase.UPPER:
            value = value.upper()
        return value

    def reserve(self, unique_id: str) -> bool:
        """Record an existing ID. Returns False if it was already taken."""
        if unique_id in self.ids:
            return False
        self.ids.add(unique_id)
        return True

    def issue(self, attributes: Dict[str, Any], preferred: Optional[str] = None) -> str:
        """
        Produce and record a unique ID.

        Args:
            attributes: Values available to the template
            preferred: An ID to use as-is when still free (e.g. identity uid)

        Returns:
            The new unique ID

        Raises:
            ValueError: If the template renders to an empty string
        """
        if preferred and self.reserve(preferred):
            return preferred

        base_id = self._render(attributes, "")
        if not base_id:
            raise ValueError(f"Unique ID template '{self.config.uid_template}' rendered empty")
        if self.reserve(base_id):
            return base_id

        counter = self._max_counter.get(base_id)
        if counter is None:
            pattern = re.compile(rf"^{re.escape(base_id)}(\d+)$")
            counter = 0
            for existing in self.ids:
                match = pattern.match(existing)
                if match:
                    counter = max(counter, int(match.group(1)))

        while True:
            counter += 1
            padded = str(counter).zfill(self.config.uid_digits)
            candidate = self._render(attributes, padded)
            if self.reserve(candidate):
                self._max_counter[base_id] = counter
                logger.debug(f"Unique ID collision on '{base_id}', issued '{candidate}'")
                return candidate
