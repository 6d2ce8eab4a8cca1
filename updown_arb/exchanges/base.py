from __future__ import annotations

from abc import ABC, abstractmethod

from updown_arb.models import VenueRead


class ExchangeAdapter(ABC):
    venue: str

    @abstractmethod
    async def fetch_prices(self, market_ref: str) -> VenueRead:
        """Best asks for both outcomes of ``market_ref``.

        Must not raise for transport or payload problems; those come back as
        an absent read.
        """
        raise NotImplementedError

    async def aclose(self) -> None:
        return None
