"""Abstract ledger client interface.

Defines the contract the oracle and order-book layers depend on. Stellar SDK
specifics (transaction building, XDR, Horizon request builders) stay in the
concrete implementation.
"""

from abc import ABC, abstractmethod
from typing import Any

from price_engine.models import AssetRef


class LedgerClient(ABC):
    """Abstract base class for read-only ledger access."""

    @property
    @abstractmethod
    def network_passphrase(self) -> str:
        """Passphrase of the network this client talks to."""
        ...

    @abstractmethod
    async def connect(self) -> None:
        """Open HTTP sessions."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release HTTP sessions."""
        ...

    @abstractmethod
    async def simulate_contract_call(
        self,
        contract_id: str,
        function_name: str,
        parameters: list[Any] | None = None,
    ) -> Any:
        """Simulate a read-only contract invocation.

        Returns the decoded return value as plain Python data: None for
        void, int for numbers, str for symbols/addresses, list for vectors
        and dict for maps/structs.

        Raises SimulationError when the simulation itself fails.
        """
        ...

    @abstractmethod
    async def fetch_orderbook(
        self, selling: AssetRef, buying: AssetRef, limit: int = 1
    ) -> dict:
        """Fetch the order book for selling/buying.

        Returns a dict with "bids" and "asks", each a list of
        {"price": str, "amount": str}, best first.
        """
        ...

    @abstractmethod
    async def fetch_trades(
        self, base: AssetRef, counter: AssetRef, limit: int = 5
    ) -> list[dict]:
        """Fetch the most recent trades for base/counter, newest first.

        Each record carries "base_amount", "counter_amount" and
        "price": {"n": str, "d": str} (counter per base).
        """
        ...
