from __future__ import annotations

"""Deterministic screen and element identifiers.

Identifiers must be reproducible across independent capture sessions, so they
are derived only from attributes that stay stable between captures. Dynamic
text on a screen (unread counters, clocks) never takes part in a screen id.
"""

import hashlib
import re
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .knowledge import ElementBounds

SCREEN_ID_LENGTH = 16

_MAX_TEXT_LENGTH = 30
_TEXT_PREFIX_LENGTH = 20
_CENTER_BUCKET_PX = 10
_SIZE_BUCKET_PX = 20

_NON_ID_CHARS = re.compile(r"[^a-zA-Z0-9_]")


def compute_screen_id(activity: str, package_name: str) -> str:
    """Return the 16 hex char screen id for an (activity, package) pair."""
    if not package_name:
        raise ValueError("package_name cannot be empty")
    if not activity:
        raise ValueError("activity cannot be empty")
    digest = hashlib.sha256(f"{package_name}|{activity}".encode("utf-8")).hexdigest()
    return digest[:SCREEN_ID_LENGTH]


def generate_element_id(
    resource_id: Optional[str],
    text: Optional[str],
    class_name: str,
    bounds: Optional["ElementBounds"] = None,
) -> str:
    """Build a stable element id from resource id, short text and class name.

    Anonymous elements (no resource id and no text) also get their quantized
    position and size appended, otherwise every unlabeled ``LinearLayout`` on a
    screen would share one id. The center snaps to a 10px grid and the size to
    a 20px grid so sub-pixel jitter between captures keeps the same id.
    """
    parts: list[str] = []

    if resource_id:
        parts.append(resource_id.rsplit("/", 1)[-1])

    if text and len(text) < _MAX_TEXT_LENGTH:
        parts.append(text[:_TEXT_PREFIX_LENGTH])

    parts.append((class_name or "").rsplit(".", 1)[-1])

    is_anonymous = not resource_id and not text
    if is_anonymous and bounds is not None:
        center_x = (bounds.x + bounds.width // 2) // _CENTER_BUCKET_PX * _CENTER_BUCKET_PX
        center_y = (bounds.y + bounds.height // 2) // _CENTER_BUCKET_PX * _CENTER_BUCKET_PX
        width = bounds.width // _SIZE_BUCKET_PX * _SIZE_BUCKET_PX
        height = bounds.height // _SIZE_BUCKET_PX * _SIZE_BUCKET_PX
        parts.append(f"{center_x}_{center_y}_{width}x{height}")

    return _NON_ID_CHARS.sub("", "_".join(parts)).lower()


def element_key(screen_id: str, element_id: str) -> str:
    """Composite key used for per-screen visited/retry bookkeeping."""
    return f"{screen_id}:{element_id}"
