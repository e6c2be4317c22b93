"""
Masking of personal data for display and logs.

Each data category maps to a pure function from the raw string to its
masked form. Rules are deterministic and keep no state.
"""

import re
from dataclasses import dataclass
from typing import Callable, Dict

MASK_CHAR = "*"

_PHONE_RE = re.compile(r"(\d{3})\d{4}(\d{4})")
_IDCARD_RE = re.compile(r"(\d{6})\d{8}(\d{4})")
_BANKCARD_RE = re.compile(r"(\d{4})\d+(\d{4})")

MaskingRule = Callable[[str], str]


@dataclass(frozen=True)
class MaskingPolicy:
    """Tunable parts of the masking rules.

    Two-character names are returned unchanged unless
    ``mask_two_char_names`` is set, in which case the second character is
    masked.
    """

    mask_two_char_names: bool = False


def mask_phone(value: str) -> str:
    return _PHONE_RE.sub(r"\1****\2", value, count=1)


def mask_email(value: str) -> str:
    if "@" not in value:
        return mask_default(value)
    local, domain = value.split("@", 1)
    if len(local) > 2:
        local = local[:2] + "***" + local[-1]
    return f"{local}@{domain}"


def mask_idcard(value: str) -> str:
    return _IDCARD_RE.sub(r"\1********\2", value, count=1)


def mask_bankcard(value: str) -> str:
    return _BANKCARD_RE.sub(r"\1****\2", value, count=1)


def mask_name(value: str, policy: MaskingPolicy = MaskingPolicy()) -> str:
    if len(value) < 2:
        return value
    if len(value) == 2:
        return value[0] + MASK_CHAR if policy.mask_two_char_names else value
    return value[0] + MASK_CHAR * (len(value) - 2) + value[-1]


def mask_default(value: str) -> str:
    if len(value) > 4:
        return value[:2] + "***" + value[-2:]
    return "***"


MASKING_RULES: Dict[str, MaskingRule] = {
    "phone": mask_phone,
    "email": mask_email,
    "idcard": mask_idcard,
    "bankcard": mask_bankcard,
    "name": mask_name,
}


def mask_sensitive_data(
    value: str,
    category: str,
    policy: MaskingPolicy = MaskingPolicy(),
) -> str:
    """Mask ``value`` according to the rule registered for ``category``.

    Unknown categories fall back to the default rule. Empty input masks to
    an empty string.
    """
    if not value:
        return ""
    if category == "name":
        return mask_name(value, policy)
    rule = MASKING_RULES.get(category, mask_default)
    return rule(value)
