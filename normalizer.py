"""
Argument normalization for model-issued actions.

Arguments arrive loosely typed (from free text or a JSON-ish blob). Enum
and required-argument checks are strict; numeric and status handling is
deliberately permissive so formatting slips do not block the conversation.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import re

from errors import ValidationError

ALLOWED_STATUSES = ("not-started", "in-progress", "completed", "ready", "draft")

NUMERIC_PROFILE_FIELDS = (
    "gpa",
    "gpa_scale",
    "budget_range_min",
    "budget_range_max",
    "graduation_year",
    "target_intake_year",
)
LIST_PROFILE_FIELDS = ("preferred_countries",)
STATUS_PROFILE_FIELDS = ("ielts_status", "toefl_status", "gre_status", "gmat_status", "sop_status")
BOOLEAN_PROFILE_FIELDS = ("onboarding_completed",)

_K_SUFFIX = re.compile(r"^\s*(-?\d+(?:\.\d+)?)k\s*$")
_TRUE = ("true", "yes", "y", "1", "on")
_FALSE = ("false", "no", "n", "0", "off")


@dataclass(frozen=True)
class ArgSpec:
    """Declared argument of an action."""

    name: str
    type: str = "string"  # string | number | boolean | list | any
    required: bool = False
    enum: Optional[Tuple[str, ...]] = None
    aliases: Dict[str, str] = field(default_factory=dict)
    description: str = ""


def normalize_numeric(value: Any) -> Any:
    """
    Parse a number with float semantics. "85k" -> 85000.
    Non-numeric strings are returned unchanged.
    """
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, (int, float)):
        return value

    text = str(value).strip()
    multiplier = 1
    match = _K_SUFFIX.match(text)
    if match:
        text = match.group(1)
        multiplier = 1000

    try:
        number = float(text) * multiplier
    except ValueError:
        return value
    return int(number) if number.is_integer() else number


def normalize_list(value: Any) -> List[str]:
    """Split a comma-separated string (or clean a list) into trimmed items."""
    if value is None:
        return []
    items = value if isinstance(value, (list, tuple)) else str(value).split(",")
    return [str(item).strip() for item in items if str(item).strip()]


def normalize_status(value: Any) -> Any:
    """
    Canonicalize known statuses ("In Progress" -> "in-progress").
    Unknown values are returned verbatim.
    """
    if not isinstance(value, str):
        return value
    token = re.sub(r"[\s_]+", "-", value.strip().lower())
    if token in ALLOWED_STATUSES:
        return token
    return value


def normalize_boolean(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    token = str(value).strip().lower()
    if token in _TRUE:
        return True
    if token in _FALSE:
        return False
    raise ValidationError(name, "expected true or false")


def normalize_enum(name: str, value: Any, allowed: Tuple[str, ...], aliases: Optional[Dict[str, str]] = None) -> str:
    """Case-insensitive enum match returning the canonical spelling."""
    token = str(value).strip().lower()
    if aliases and token in aliases:
        return aliases[token]
    for option in allowed:
        if option.lower() == token:
            return option
    raise ValidationError(name, f"must be one of {', '.join(allowed)}")


def normalize_profile_value(field_name: str, value: Any) -> Any:
    """Normalize a single profile field value according to its kind."""
    if value is None:
        return None
    if field_name in NUMERIC_PROFILE_FIELDS:
        return normalize_numeric(value)
    if field_name in LIST_PROFILE_FIELDS:
        return normalize_list(value)
    if field_name in STATUS_PROFILE_FIELDS:
        return normalize_status(value)
    if field_name in BOOLEAN_PROFILE_FIELDS:
        return normalize_boolean(field_name, value)
    return str(value).strip() if isinstance(value, str) else value


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip()) or value == []


def normalize_arguments(specs: Tuple[ArgSpec, ...], raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Validate and coerce raw arguments against declared specs.
    Undeclared arguments are dropped.

    Raises:
        ValidationError: naming the first offending field
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValidationError("arguments", "expected an object")

    args: Dict[str, Any] = {}
    for spec in specs:
        value = raw.get(spec.name)
        if _is_missing(value):
            if spec.required:
                raise ValidationError(spec.name, "is required")
            continue

        if spec.type == "number":
            value = normalize_numeric(value)
        elif spec.type == "boolean":
            value = normalize_boolean(spec.name, value)
        elif spec.type == "list":
            value = normalize_list(value)
        elif isinstance(value, str):
            value = value.strip()
        elif spec.type == "string":
            value = str(value)

        if spec.enum:
            value = normalize_enum(spec.name, value, spec.enum, spec.aliases)

        args[spec.name] = value
    return args
