"""
Tests for entry-type classification.
"""

from core.entry_types import (
    BREAKOUT,
    MEAN_REVERSION,
    TREND,
    UNKNOWN,
    classify_entry,
    classify_from_indicators,
    classify_from_reasoning,
)


def ema(fast, slow):
    return {"ema": {"fast": {"value": fast}, "slow": {"value": slow}}}


class TestIndicators:
    def test_ema_divergence_is_trend(self):
        assert classify_from_indicators(ema(102, 100), 100) == TREND

    def test_small_divergence_is_not_trend(self):
        assert classify_from_indicators(ema(100.5, 100), 100) == UNKNOWN

    def test_wide_atr_is_breakout(self):
        indicators = {**ema(100.5, 100), "atr": {"value": 3}}
        assert classify_from_indicators(indicators, 100) == BREAKOUT

    def test_rsi_extreme_is_mean_reversion(self):
        assert classify_from_indicators({"rsi": {"value": 25}}, 100) == MEAN_REVERSION
        assert classify_from_indicators({"rsi": {"value": 75}}, 100) == MEAN_REVERSION

    def test_trend_checked_before_rsi(self):
        indicators = {**ema(105, 100), "rsi": {"value": 80}}
        assert classify_from_indicators(indicators, 100) == TREND

    def test_empty_is_unknown(self):
        assert classify_from_indicators({}, 100) == UNKNOWN
        assert classify_from_indicators(None, 100) == UNKNOWN


class TestReasoning:
    def test_keywords(self):
        assert classify_from_reasoning("Riding the momentum higher") == TREND
        assert classify_from_reasoning("Clean break of resistance") == BREAKOUT
        assert classify_from_reasoning("Oversold bounce expected") == MEAN_REVERSION

    def test_no_keyword(self):
        assert classify_from_reasoning("gut feeling") == UNKNOWN
        assert classify_from_reasoning(None) == UNKNOWN


def test_reasoning_is_fallback_only():
    assert classify_entry({"rsi": {"value": 50}}, 100, "oversold bounce") == MEAN_REVERSION
    assert classify_entry(ema(103, 100), 100, "oversold bounce") == TREND
    assert classify_entry({}, 100, "no idea") == UNKNOWN
