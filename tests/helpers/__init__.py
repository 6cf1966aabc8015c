"""Test helpers for the cycletrader test suite"""

from tests.helpers.cycle_stubs import (
    ListSink,
    StubAccountProvider,
    StubMarketData,
    StubRanker,
    StubSignalGenerator,
    long_signal,
    make_snapshot,
    make_trade,
    short_signal,
)

__all__ = [
    "ListSink",
    "StubAccountProvider",
    "StubMarketData",
    "StubRanker",
    "StubSignalGenerator",
    "long_signal",
    "make_snapshot",
    "make_trade",
    "short_signal",
]
