"""
Attribute bag helpers.

Source and fusion accounts carry free-form attribute mappings. Values are
either a scalar string, a list of strings, or absent. These helpers encode
the lookup and multi-value conventions shared by the merge and matching
services so that nothing does ad hoc dictionary access.

Multi-value attributes can also travel as a single bracket-delimited string,
e.g. "[admin] [finance]".
"""

import re
import unicodedata
from typing import Any, Dict, Iterable, List, Optional, Set, Union

AttributeValue = Union[str, List[str], None]
Attributes = Dict[str, Any]

BRACKET_PATTERN = re.compile(r"\[([^ \]][^\]]*)\]")
_PUNCTUATION_PATTERN = re.compile(r"[^\w\s]")
_WHITESPACE_PATTERN = re.compile(r"\s+")


# =============================================================================
# Lookup
# =============================================================================


def is_valid_value(value: Any) -> bool:
    """A value is valid when it is neither None nor an empty string/list."""
    if value is None:
        return False
    if isinstance(value, str):
        return value != ""
    if isinstance(value, (list, tuple, set)):
        return len(value) > 0
    return True


def to_lower_first(name: Optional[str]) -> str:
    """Lowercase the first character of an attribute name."""
    if not name:
        return name or ""
    return name[0].lower() + name[1:]


def get_attribute_value(attributes: Optional[Attributes], name: str) -> Any:
    """
    Look up an attribute by name, falling back to the lower-first-char key.

    Platforms are inconsistent about "DisplayName" vs "displayName", so a miss
    on the exact key retries with the first character lowercased.

    Args:
        attributes: Attribute mapping (may be None)
        name: Attribute name

    Returns:
        The stored value, or None when neither key is present
    """
    if not attributes:
        return None
    value = attributes.get(name)
    if value is not None:
        return value
    lower_first = to_lower_first(name)
    if lower_first and lower_first != name:
        return attributes.get(lower_first)
    return None


def set_attribute_value(
    attributes: Attributes, name: str, value: Any, both_cases: bool = False
) -> None:
    """Set an attribute, optionally also under its lower-first-char key."""
    attributes[name] = value
    if both_cases:
        lower_first = to_lower_first(name)
        if lower_first and lower_first != name:
            attributes[lower_first] = value


def first_valid_attribute(attributes: Optional[Attributes], *names: str) -> Any:
    """Return the first valid value among several candidate attribute names."""
    for name in names:
        value = get_attribute_value(attributes, name)
        if is_valid_value(value):
            return value
    return None


# =============================================================================
# Multi-value handling
# =============================================================================


def attr_split(text: str) -> List[str]:
    """
    Split a bracket-delimited multi-value string.

    "[a] [b]" -> ["a", "b"]. Text without any bracketed group is returned
    as a single-element list unchanged.
    """
    values: List[str] = []
    for match in BRACKET_PATTERN.finditer(text):
        item = match.group(1)
        if item and item not in values:
            values.append(item)
    return values or [text]


def attr_concat(values: Iterable[str]) -> str:
    """Join values as "[a] [b]", deduplicated and sorted."""
    unique = sorted(set(values))
    return " ".join(f"[{value}]" for value in unique)


def flatten_values(value: Any) -> List[str]:
    """
    Flatten a raw attribute value into a list of non-empty strings.

    Lists are flattened recursively and every string is passed through
    attr_split, so "[a] [b]" and ["[a] [b]", "c"] both expand fully.
    """
    if not is_valid_value(value):
        return []
    if isinstance(value, (list, tuple, set)):
        flat: List[str] = []
        for item in value:
            flat.extend(flatten_values(item))
        return flat
    return [item for item in attr_split(str(value)) if item]


def to_set(attributes: Optional[Attributes], name: str) -> Set[str]:
    """Convert a list attribute to a set; anything else yields an empty set."""
    value = attributes.get(name) if attributes else None
    return set(value) if isinstance(value, (list, tuple, set)) else set()


# =============================================================================
# Comparison normalization
# =============================================================================


def strip_diacritics(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_for_comparison(value: Any) -> str:
    """
    Normalize a value for fuzzy comparison.

    Lowercases, strips diacritics and punctuation, and collapses whitespace.
    List values are joined with a single space first.

    Args:
        value: Raw attribute value

    Returns:
        Normalized string ("" for absent values)
    """
    if not is_valid_value(value):
        return ""
    if isinstance(value, (list, tuple, set)):
        value = " ".join(str(item) for item in value)
    text = strip_diacritics(str(value)).lower()
    text = _PUNCTUATION_PATTERN.sub(" ", text)
    return _WHITESPACE_PATTERN.sub(" ", text).strip()
