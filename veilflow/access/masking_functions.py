"""
Reusable masking functions with role-based exemptions.

Each builder returns a pure ``(effective_roles, tag_value, raw_value)``
callable suitable for ``PolicyEngine.create_masking_policy``. Exempt roles
are ordinary function logic: when any of them is in the caller's effective
role set the raw value is returned unchanged.
"""

import hashlib
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional

from .models import MaskFunction, normalize_roles

# Replacement used by the PII string policy for fully masked values
FULL_MASK = "**~MASKED~**"


class MaskingStrategy(Enum):
    """
    Column masking strategies.

    Each strategy defines how sensitive data is masked for callers outside
    the exempt roles.
    """
    NONE = "none"  # No masking
    HASH = "hash"  # SHA-256 hashing
    REDACT = "redact"  # Full redaction (replace with a constant)
    PARTIAL = "partial"  # Partial masking (e.g., last 4 characters)
    NULLIFY = "nullify"  # Replace with NULL
    MASK_EMAIL = "mask_email"  # Keep domain only
    MASK_PHONE = "mask_phone"  # Keep first three characters


# ---------------------------------------------------------------------------
# Value transforms (raw value -> masked value); NULL stays NULL
# ---------------------------------------------------------------------------

def _hash(val: Any) -> Optional[str]:
    if val is None:
        return None
    return hashlib.sha256(str(val).encode("utf-8")).hexdigest()


def _redactor(replacement: str) -> Callable[[Any], Optional[str]]:
    def redact(val: Any) -> Optional[str]:
        return replacement if val is not None else None
    return redact


def _nullify(val: Any) -> None:
    return None


def _partial(visible_chars: int = 4, position: str = "end", mask_char: str = "*"):
    def partial(val: Any) -> Optional[str]:
        if val is None:
            return None
        text = str(val)
        hidden = max(0, len(text) - visible_chars)
        if position == "end":
            return mask_char * hidden + text[hidden:]
        return text[:visible_chars] + mask_char * hidden
    return partial


def _mask_email(val: Any) -> Optional[str]:
    if val is None:
        return None
    text = str(val)
    if "@" not in text:
        return FULL_MASK
    return f"{FULL_MASK}@{text.rsplit('@', 1)[-1]}"


def _mask_phone(val: Any) -> Optional[str]:
    if val is None:
        return None
    return f"{str(val)[:3]}-***-****"


_TRANSFORMS: Dict[MaskingStrategy, Callable[[Any], Any]] = {
    MaskingStrategy.NONE: lambda val: val,
    MaskingStrategy.HASH: _hash,
    MaskingStrategy.REDACT: _redactor(FULL_MASK),
    MaskingStrategy.PARTIAL: _partial(),
    MaskingStrategy.NULLIFY: _nullify,
    MaskingStrategy.MASK_EMAIL: _mask_email,
    MaskingStrategy.MASK_PHONE: _mask_phone,
}


# ---------------------------------------------------------------------------
# Public builders
# ---------------------------------------------------------------------------

def conditional_mask(
    transform: Callable[[Any], Any],
    exempt_roles: Iterable[str] = (),
) -> MaskFunction:
    """
    Wrap a value transform with an exempt-role check.

    Args:
        transform: raw value -> masked value
        exempt_roles: Roles that see unmasked data

    Returns:
        Masking function (effective_roles, tag_value, raw_value) -> value
    """
    exempt = normalize_roles(exempt_roles)

    def mask(effective_roles: FrozenSet[str], tag_value: Optional[str], val: Any) -> Any:
        if exempt & effective_roles:
            return val
        return transform(val)

    return mask


def strategy_mask(strategy, exempt_roles: Iterable[str] = (), replacement: Optional[str] = None) -> MaskFunction:
    """
    Build a masking function for a named strategy.

    Args:
        strategy: MaskingStrategy or its string value
        exempt_roles: Roles that see unmasked data
        replacement: Constant used by the redact strategy

    Raises:
        ValueError: If the strategy is not recognised
    """
    if isinstance(strategy, str):
        strategy = MaskingStrategy(strategy.lower())
    transform = _TRANSFORMS[strategy]
    if strategy == MaskingStrategy.REDACT and replacement is not None:
        transform = _redactor(replacement)
    return conditional_mask(transform, exempt_roles)


def redact(exempt_roles: Iterable[str] = (), replacement: str = FULL_MASK) -> MaskFunction:
    return conditional_mask(_redactor(replacement), exempt_roles)


def nullify(exempt_roles: Iterable[str] = ()) -> MaskFunction:
    return conditional_mask(_nullify, exempt_roles)


def hash_value(exempt_roles: Iterable[str] = ()) -> MaskFunction:
    return conditional_mask(_hash, exempt_roles)


def partial(
    exempt_roles: Iterable[str] = (),
    visible_chars: int = 4,
    position: str = "end",
    mask_char: str = "*",
) -> MaskFunction:
    if position not in ("start", "end"):
        raise ValueError(f"position must be 'start' or 'end', got '{position}'")
    return conditional_mask(_partial(visible_chars, position, mask_char), exempt_roles)


def mask_email(exempt_roles: Iterable[str] = ()) -> MaskFunction:
    return conditional_mask(_mask_email, exempt_roles)


def mask_phone(exempt_roles: Iterable[str] = ()) -> MaskFunction:
    return conditional_mask(_mask_phone, exempt_roles)


def tag_value_mask(
    by_tag_value: Dict[str, Any],
    default=MaskingStrategy.REDACT,
    exempt_roles: Iterable[str] = (),
) -> MaskFunction:
    """
    Pick the masking strategy from the column's tag value.

    Args:
        by_tag_value: Tag value -> MaskingStrategy (or strategy name)
        default: Strategy for any other tag value, including no value
        exempt_roles: Roles that see unmasked data

    Example (the PII string policy):
        tag_value_mask(
            {"PHONE_NUMBER": "mask_phone", "EMAIL": "mask_email"},
            exempt_roles={"ACCOUNTADMIN", "SYSADMIN"},
        )
        # PHONE_NUMBER "5551234567" -> "555-***-****"
        # EMAIL "jo@example.com"    -> "**~MASKED~**@example.com"
        # anything else             -> "**~MASKED~**"
    """
    exempt = normalize_roles(exempt_roles)
    transforms = {
        value: _TRANSFORMS[MaskingStrategy(s.lower()) if isinstance(s, str) else s]
        for value, s in by_tag_value.items()
    }
    fallback = _TRANSFORMS[MaskingStrategy(default.lower()) if isinstance(default, str) else default]

    def mask(effective_roles: FrozenSet[str], tag_value: Optional[str], val: Any) -> Any:
        if exempt & effective_roles:
            return val
        return transforms.get(tag_value, fallback)(val)

    return mask


def pii_string_mask(exempt_roles: Iterable[str] = ("ACCOUNTADMIN", "SYSADMIN")) -> MaskFunction:
    """Standard PII string policy: phone and email partially, everything else fully."""
    return tag_value_mask(
        {
            "PHONE_NUMBER": MaskingStrategy.MASK_PHONE,
            "EMAIL": MaskingStrategy.MASK_EMAIL,
        },
        default=MaskingStrategy.REDACT,
        exempt_roles=exempt_roles,
    )
