"""Test helpers for the tick engine test suite"""

from tests.helpers.stubs import (
    NOW,
    FakeClock,
    FakeMarketData,
    FakeMonotonic,
    FakeVenueClient,
    RecordingBilling,
    StaticCredentials,
    intent_json,
    make_candles,
    seed_session,
)

__all__ = [
    "NOW",
    "FakeClock",
    "FakeMarketData",
    "FakeMonotonic",
    "FakeVenueClient",
    "RecordingBilling",
    "StaticCredentials",
    "intent_json",
    "make_candles",
    "seed_session",
]
