"""
Tests for position sizing.

Coverage:
- Leverage rounding and clamping
- Market profiles (perpetual vs spot)
- Base sizing, spot cash cap, confidence scaling
- Venue minimum, max position and projected leverage caps
"""

import pytest

from core.config import ConfidenceControlConfig, RiskLimitsConfig
from core.models import Account, Position
from core.sizing import (
    MarketProfile,
    PositionSizer,
    actual_leverage,
    build_market_profile,
    is_perpetual_market,
)

PERP = MarketProfile(market="BTC-PERP", venue="hyperliquid", is_perpetual=True, max_leverage=2)
SPOT = MarketProfile(market="BTC-USD", venue="coinbase", is_perpetual=False, max_leverage=1,
                     allow_short=False)


def account(equity=10000.0, cash=None):
    return Account(id="acct-1", starting_equity=equity, cash_balance=equity if cash is None else cash,
                   equity=equity)


def position(market="BTC-PERP", notional=1000.0, side="long"):
    return Position(id=f"pos-{market}", account_id="acct-1", market=market, side=side,
                    size=notional / 100.0, avg_entry=100.0)


def sizer(scaling=False, **risk):
    return PositionSizer(RiskLimitsConfig(**risk), ConfidenceControlConfig(confidence_scaling=scaling), 0.65)


def size(s, acct=None, profile=PERP, bias="long", confidence=0.8, leverage=1, pos=None, positions=None):
    return s.size(account=acct or account(), profile=profile, bias=bias, confidence=confidence,
                  ai_leverage=leverage, position=pos, all_positions=positions or [])


@pytest.mark.parametrize("requested,max_leverage,expected", [
    (1, 2, 1),
    (1.4, 5, 1),
    (1.5, 5, 2),
    (2.5, 2, 2),
    (10, 2.7, 2),
    (0, 3, 1),
    (None, 3, 1),
])
def test_actual_leverage(requested, max_leverage, expected):
    assert actual_leverage(requested, max_leverage) == expected


class TestMarketProfile:
    def test_perp_detection(self):
        assert is_perpetual_market("BTC-PERP", "coinbase", "live")
        assert is_perpetual_market("BTC-USD", "hyperliquid", "live")
        assert is_perpetual_market("BTC-USD", "coinbase", "virtual")
        assert is_perpetual_market("BTC-USD", "coinbase", "live", intx_enabled=True)
        assert not is_perpetual_market("BTC-USD", "coinbase", "live")

    def test_spot_profile_is_1x_long_only(self):
        profile = build_market_profile("BTC-USD", "coinbase", "live", account(), RiskLimitsConfig(max_leverage=5))
        assert profile.market_type == "spot"
        assert profile.max_leverage == 1
        assert profile.allow_short is False
        assert profile.min_order_usd == 1.0

    def test_perp_profile_uses_strategy_leverage(self):
        profile = build_market_profile("ETH-PERP", "hyperliquid", "live", account(), RiskLimitsConfig(max_leverage=5))
        assert profile.max_leverage == 5
        assert profile.allow_short is True
        assert profile.min_order_usd == 10.0


class TestBaseSizing:
    def test_one_x(self):
        result = size(sizer())
        assert result.approved
        assert result.notional == pytest.approx(9900)
        assert result.leverage == 1

    def test_capped_by_max_position(self):
        result = size(sizer(), leverage=3)
        assert result.leverage == 2
        assert result.notional == pytest.approx(10000)

    def test_existing_exposure_reduces_room(self):
        result = size(sizer(), positions=[position("ETH-PERP", 5000)])
        assert result.notional == pytest.approx(4900)

    def test_spot_buy_limited_by_cash(self):
        result = size(sizer(), acct=account(cash=500), profile=SPOT)
        assert result.notional == pytest.approx(495)
        assert "spot_cash" in result.adjustments

    def test_spot_insufficient_cash(self):
        result = size(sizer(), acct=account(cash=0.5), profile=SPOT)
        assert not result.approved
        assert result.check == "insufficient_cash"
        assert result.reason == "Insufficient cash: $0.50 available, minimum order is $1"

    def test_confidence_scaling(self):
        result = size(sizer(scaling=True), confidence=0.825)
        assert result.notional == pytest.approx(9900 * 0.75)
        assert "confidence_scaling" in result.adjustments

    def test_venue_minimum_floor(self):
        result = size(sizer(), acct=account(equity=8))
        assert result.approved
        assert result.notional == 10.0
        assert "venue_minimum" in result.adjustments


class TestCaps:
    def test_max_position_shrinks_order(self):
        existing = position(notional=9500)
        result = size(sizer(), leverage=2, pos=existing, positions=[existing])
        assert result.approved
        assert result.notional == pytest.approx(500)
        assert "max_position" in result.adjustments

    def test_max_position_rejects_below_minimum(self):
        existing = position(notional=9995)
        result = size(sizer(), leverage=2, pos=existing, positions=[existing])
        assert not result.approved
        assert result.check == "max_position"
        assert result.reason == (
            "Position would exceed max: existing $9995.00 + new $9805.00 = $19800.00 > max $10000"
        )

    def test_projected_leverage_rejects(self):
        result = size(sizer(max_position_usd=50000), leverage=2, positions=[position("ETH-PERP", 19995)])
        assert not result.approved
        assert result.check == "projected_leverage"
        assert result.reason == (
            "Projected leverage 2.00x would exceed max 2x (current exposure: $19995.00, proposed: $10.00)"
        )


def test_proposed_notional():
    s = sizer()
    assert s.proposed_notional(10000, []) == pytest.approx(10000)
    assert s.proposed_notional(10000, [position("ETH-PERP", 15000)]) == pytest.approx(4800)
