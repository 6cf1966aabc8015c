"""
Collaborator Interfaces

Abstract contracts the cycle orchestrator consumes. Concrete market data,
ranking and signal generation live outside the core; the paper executor
and the Hyperliquid account provider ship as reference implementations.

Any method may raise. The orchestrator wraps every call so that one
failure degrades a single asset, position or signal, never the cycle.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Union

from core.models import (
    AccountState,
    CandidateSignal,
    ExitReason,
    Fill,
    MarketSnapshot,
    Position,
    RankedAsset,
    SignalBatch,
    TradeRecord,
)


class MarketDataProvider(ABC):
    """Partial results allowed: missing symbols are simply absent from the map."""

    @abstractmethod
    def fetch(self, assets: Sequence[str]) -> Dict[str, MarketSnapshot]:
        ...


class AssetRanker(ABC):

    @abstractmethod
    def rank(self, snapshots: Dict[str, MarketSnapshot]) -> List[RankedAsset]:
        """Return assets best-first."""
        ...


class SignalGenerator(ABC):

    @abstractmethod
    def generate(
        self,
        symbols: Sequence[str],
        market_data: Dict[str, MarketSnapshot],
        account_state: Optional[AccountState],
        ranking: List[RankedAsset],
    ) -> Union[SignalBatch, List[CandidateSignal]]:
        """
        Produce candidate signals for (a subset of) symbols.

        Generators that filter their own candidates should return a
        SignalBatch so those rejections surface in the cycle result.
        """
        ...


class Executor(ABC):

    @abstractmethod
    def execute_entry(self, signal: CandidateSignal, current_price: float) -> Fill:
        ...

    @abstractmethod
    def execute_exit(
        self,
        position: Position,
        pct: float,
        reason: ExitReason,
        price: float,
    ) -> Fill:
        ...


class AccountStateProvider(ABC):

    @abstractmethod
    def get_user_state(self, address: str) -> AccountState:
        ...


class PerformanceSink(ABC):
    """Fire-and-forget persistence of realized trades."""

    @abstractmethod
    def record(self, trade: TradeRecord) -> None:
        ...
