"""15-minute market slot keys.

A new up/down market opens on each venue at :00, :15, :30 and :45. The slot
key names both the log bucket and the market instance live during that
window; it is recomputed from the wall clock on every tick.
"""

from __future__ import annotations

from datetime import datetime

SLOT_MINUTES = 15
SLOT_KEY_FORMAT = "%Y-%m-%d_%H-%M"


def slot_start(at: datetime | None = None) -> datetime:
    """Floors ``at`` (default: local now) to the start of its 15-minute slot."""
    if at is None:
        at = datetime.now()
    elif at.tzinfo is not None:
        at = at.astimezone()
    minute = (at.minute // SLOT_MINUTES) * SLOT_MINUTES
    return at.replace(minute=minute, second=0, microsecond=0)


def slot_key(at: datetime | None = None) -> str:
    """``YYYY-MM-DD_HH-MM`` with MM in {00, 15, 30, 45}."""
    return slot_start(at).strftime(SLOT_KEY_FORMAT)


def parse_slot_key(key: str) -> datetime:
    """Local start time of the slot named by ``key``."""
    return datetime.strptime(key, SLOT_KEY_FORMAT)


def polymarket_slug(market: str, at: datetime | None = None) -> str:
    """Gamma slug of the slot's market, e.g. ``btc-updown-15m-1760000400``."""
    start = slot_start(at)
    return f"{market}-updown-15m-{int(start.timestamp())}"
