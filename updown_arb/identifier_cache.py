"""Single-entry cache of slot-derived instrument identifiers.

The lookup key embeds the time slot, so once the key changes the previous
identifiers are permanently stale. Capacity is exactly one: a successful
resolution of a new key replaces the old entry unconditionally.

Usage::

    cache = IdentifierCache(adapter.fetch_token_ids)
    ids = await cache.resolve("btc-updown-15m-1760000400")
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from updown_arb.models import InstrumentIdentifiers

LOGGER = logging.getLogger(__name__)

Resolver = Callable[[str], Awaitable[InstrumentIdentifiers]]


class IdentifierResolutionError(RuntimeError):
    """Raised when a lookup key cannot be resolved to instrument identifiers."""


class IdentifierCache:
    def __init__(self, resolver: Resolver) -> None:
        self._resolver = resolver
        self._entry: InstrumentIdentifiers | None = None
        self._resolutions = 0

    @property
    def current(self) -> InstrumentIdentifiers | None:
        return self._entry

    @property
    def resolution_count(self) -> int:
        """Number of external resolution calls issued so far."""
        return self._resolutions

    async def resolve(self, lookup_key: str) -> InstrumentIdentifiers:
        """Returns identifiers for ``lookup_key``, calling out only on a miss.

        Resolution errors propagate and leave the cached entry untouched.
        """
        entry = self._entry
        if entry is not None and entry.lookup_key == lookup_key:
            return entry

        self._resolutions += 1
        fresh = await self._resolver(lookup_key)
        if fresh.lookup_key != lookup_key:
            fresh = InstrumentIdentifiers(
                lookup_key=lookup_key,
                up_id=fresh.up_id,
                down_id=fresh.down_id,
                condition_id=fresh.condition_id,
            )
        if entry is not None:
            LOGGER.info("instrument ids rolled over %s -> %s", entry.lookup_key, lookup_key)
        self._entry = fresh
        return fresh

    def clear(self) -> None:
        self._entry = None

