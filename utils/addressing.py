"""
Recipient / counterpart addressing shared by the dispatcher and the
conversation engine.

Accepted forms:
  - phone number, E.164 digits with optional "+", spaces, dashes, dots, parens
  - personal JID:  <digits>@s.whatsapp.net   (normalized to the bare number)
  - group id:      <digits>[-<digits>]@g.us  (kept as-is)
"""
from __future__ import annotations

import re
from typing import Optional

from core.errors import ValidationError

PERSONAL_SUFFIX = "@s.whatsapp.net"
GROUP_SUFFIX = "@g.us"
BROADCAST_SUFFIX = "@broadcast"
STATUS_BROADCAST = "status@broadcast"

_PHONE_RE = re.compile(r"^[1-9]\d{1,14}$")
_GROUP_RE = re.compile(r"^\d+(-\d+)?@g\.us$")
_STRIP_RE = re.compile(r"[\s\-().+]")


def normalize_recipient(raw: str) -> Optional[str]:
    """Return the canonical recipient form, or None when the address is invalid."""
    if not raw or not isinstance(raw, str):
        return None
    value = raw.strip()

    if value.endswith(GROUP_SUFFIX):
        return value if _GROUP_RE.match(value) else None

    if value.endswith(PERSONAL_SUFFIX):
        value = value[: -len(PERSONAL_SUFFIX)]
        # multi-device JIDs carry a ":<device>" suffix on the user part
        value = value.split(":", 1)[0]

    digits = _STRIP_RE.sub("", value)
    return digits if _PHONE_RE.match(digits) else None


def validate_recipients(recipients: list[str]) -> list[str]:
    """Normalize a recipient list, raising ValidationError listing every bad entry."""
    if not recipients:
        raise ValidationError("recipients must not be empty")

    normalized: list[str] = []
    errors: list[str] = []
    for i, raw in enumerate(recipients):
        value = normalize_recipient(raw)
        if value is None:
            errors.append(f"recipients[{i}]: invalid address {raw!r}")
        else:
            normalized.append(value)

    if errors:
        raise ValidationError(f"{len(errors)} invalid recipient(s)", errors)
    return normalized


def is_group(address: str) -> bool:
    return address.endswith(GROUP_SUFFIX)


def is_broadcast(address: str) -> bool:
    return address == STATUS_BROADCAST or BROADCAST_SUFFIX in address


def counterpart_key(sender_id: str) -> str:
    """Stable conversation key for an inbound sender (falls back to the raw id)."""
    return normalize_recipient(sender_id) or sender_id.strip()
