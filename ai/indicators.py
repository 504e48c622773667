"""
Candle-based technical indicators and a default market analyzer.

All functions take candles oldest first and return None when there is not
enough history. The analyzer is the default for the MarketAnalyzer hook used by
prefetch and the run_market_analysis tool; callers may inject their own.
"""

import logging
import math
from typing import Any, Dict, List, Optional, Sequence

from core.ports import Candle

log = logging.getLogger(__name__)

# Primary timeframe -> higher timeframe used for alignment checks
HTF_MAP = {
    "1m": "15m",
    "3m": "15m",
    "5m": "1h",
    "15m": "4h",
    "30m": "4h",
    "1h": "1d",
    "2h": "1d",
    "4h": "1d",
}


def higher_timeframe(timeframe: str) -> Optional[str]:
    return HTF_MAP.get(timeframe)


def calculate_rsi(candles: Sequence[Candle], period: int = 14) -> Optional[float]:
    """RSI with Wilder smoothing, seeded by the simple average of the first period."""
    if len(candles) < period + 1:
        return None

    changes = [candles[i].close - candles[i - 1].close for i in range(1, len(candles))]
    gains = [max(c, 0.0) for c in changes]
    losses = [max(-c, 0.0) for c in changes]

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period
    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return max(0.0, min(100.0, 100 - 100 / (1 + rs)))


def calculate_atr(candles: Sequence[Candle], period: int = 14) -> Optional[float]:
    """Simple average of the last `period` true ranges."""
    if len(candles) < period + 1:
        return None
    true_ranges = []
    for prev, cur in zip(candles, candles[1:]):
        true_ranges.append(max(
            cur.high - cur.low,
            abs(cur.high - prev.close),
            abs(cur.low - prev.close),
        ))
    return sum(true_ranges[-period:]) / period


def calculate_volatility(candles: Sequence[Candle], window: int = 50) -> Optional[float]:
    """Population std-dev of close-to-close % returns over the window."""
    if len(candles) < window:
        return None
    recent = candles[-window:]
    returns = [
        (cur.close - prev.close) / prev.close * 100
        for prev, cur in zip(recent, recent[1:])
        if prev.close
    ]
    if not returns:
        return None
    mean = sum(returns) / len(returns)
    variance = sum((r - mean) ** 2 for r in returns) / len(returns)
    return math.sqrt(variance)


def calculate_ema(candles: Sequence[Candle], period: int) -> Optional[float]:
    if len(candles) < period:
        return None
    closes = [c.close for c in candles]
    ema = sum(closes[:period]) / period
    multiplier = 2 / (period + 1)
    for price in closes[period:]:
        ema = (price - ema) * multiplier + ema
    return ema


def calculate_indicators(candles: Sequence[Candle], config: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    """
    Compute the enabled indicators.

    Args:
        candles: Oldest first
        config: {"rsi": {"enabled", "period"}, "atr": {...}, "volatility": {"enabled", "window"},
                 "ema": {"enabled", "fast", "slow"}}

    Returns:
        {"rsi": {"value", "period"}, "atr": {...}, "volatility": {"value", "window"},
         "ema": {"fast": {"value", "period"}, "slow": {...}}}; indicators without
        enough history are omitted
    """
    indicators: Dict[str, Any] = {}

    rsi_cfg = config.get("rsi") or {}
    if rsi_cfg.get("enabled"):
        period = rsi_cfg.get("period") or 14
        value = calculate_rsi(candles, period)
        if value is not None:
            indicators["rsi"] = {"value": value, "period": period}

    atr_cfg = config.get("atr") or {}
    if atr_cfg.get("enabled"):
        period = atr_cfg.get("period") or 14
        value = calculate_atr(candles, period)
        if value is not None:
            indicators["atr"] = {"value": value, "period": period}

    vol_cfg = config.get("volatility") or {}
    if vol_cfg.get("enabled"):
        window = vol_cfg.get("window") or 50
        value = calculate_volatility(candles, window)
        if value is not None:
            indicators["volatility"] = {"value": value, "window": window}

    ema_cfg = config.get("ema") or {}
    if ema_cfg.get("enabled"):
        for key in ("fast", "slow"):
            period = ema_cfg.get(key)
            if not period:
                continue
            value = calculate_ema(candles, period)
            if value is not None:
                indicators.setdefault("ema", {})[key] = {"value": value, "period": period}

    return indicators


def detect_regime(candles: Sequence[Candle], indicators: Dict[str, Any]) -> Dict[str, Any]:
    """Score recent structure, price change, EMA stack and RSI into a trend label."""
    if len(candles) < 20:
        return {"trend": "neutral", "trend_strength": 0, "regime": "ranging", "confidence": 0.3}

    recent = candles[-20:]
    pairs = list(zip(recent, recent[1:]))
    total = len(pairs)
    hh = sum(1 for a, b in pairs if b.high > a.high) / total
    ll = sum(1 for a, b in pairs if b.low < a.low) / total
    hl = sum(1 for a, b in pairs if b.low > a.low) / total
    lh = sum(1 for a, b in pairs if b.high < a.high) / total

    bullish = bearish = 0
    signals = 4
    if hh > 0.55 and hl > 0.55:
        bullish += 2
    elif hh > 0.45 and hl > 0.45:
        bullish += 1
    if ll > 0.55 and lh > 0.55:
        bearish += 2
    elif ll > 0.45 and lh > 0.45:
        bearish += 1

    first, last = recent[0].close, recent[-1].close
    change_pct = (last - first) / first * 100 if first else 0.0
    if change_pct > 1.0:
        bullish += 2
    elif change_pct > 0.3:
        bullish += 1
    elif change_pct < -1.0:
        bearish += 2
    elif change_pct < -0.3:
        bearish += 1

    ema = indicators.get("ema") or {}
    if "fast" in ema and "slow" in ema:
        fast, slow = ema["fast"]["value"], ema["slow"]["value"]
        if last > fast > slow:
            bullish += 2
        elif fast > slow:
            bullish += 1
        elif last < fast < slow:
            bearish += 2
        elif fast < slow:
            bearish += 1
        signals += 2

    if "rsi" in indicators:
        rsi = indicators["rsi"]["value"]
        if rsi > 60:
            bullish += 1
        elif rsi < 40:
            bearish += 1
        signals += 1

    net = (bullish - bearish) / signals
    strength = min(100, round(abs(net) * 100))
    if net > 0.6:
        trend = "strong_uptrend"
    elif net > 0.2:
        trend = "uptrend"
    elif net < -0.6:
        trend = "strong_downtrend"
    elif net < -0.2:
        trend = "downtrend"
    else:
        trend = "neutral"

    return {
        "trend": trend,
        "trend_strength": strength,
        "regime": "ranging" if strength < 25 else "trending",
        "confidence": min(1.0, signals / 10),
    }


def _direction(indicators: Dict[str, Any]) -> str:
    bullish = bearish = 0
    ema = indicators.get("ema") or {}
    if "fast" in ema and "slow" in ema:
        if ema["fast"]["value"] > ema["slow"]["value"]:
            bullish += 1
        else:
            bearish += 1
    if "rsi" in indicators:
        if indicators["rsi"]["value"] > 55:
            bullish += 1
        elif indicators["rsi"]["value"] < 45:
            bearish += 1
    if bullish > bearish:
        return "up"
    if bearish > bullish:
        return "down"
    return "neutral"


def analyze_multi_timeframe(primary: Dict[str, Any], htf: Dict[str, Any],
                            primary_timeframe: str, htf_timeframe: str) -> Dict[str, Any]:
    htf_trend = _direction(htf)
    primary_trend = _direction(primary)
    if htf_trend == primary_trend == "up":
        alignment = "aligned_bullish"
    elif htf_trend == primary_trend == "down":
        alignment = "aligned_bearish"
    elif "neutral" in (htf_trend, primary_trend):
        alignment = "neutral"
    else:
        alignment = "conflicting"
    result = {
        "primary_timeframe": primary_timeframe,
        "higher_timeframe": htf_timeframe,
        "htf_trend": htf_trend,
        "alignment": alignment,
    }
    if "rsi" in htf:
        result["htf_rsi"] = htf["rsi"]["value"]
    return result


def analyze_market(market: str, candles: List[Candle], indicators: Dict[str, Any],
                   htf_indicators: Optional[Dict[str, Any]] = None,
                   timeframe: str = "5m") -> Dict[str, Any]:
    """Default MarketAnalyzer: regime, optional HTF alignment and a one-line summary."""
    regime = detect_regime(candles, indicators)
    mtf = None
    htf = higher_timeframe(timeframe)
    if htf_indicators and htf:
        mtf = analyze_multi_timeframe(indicators, htf_indicators, timeframe, htf)

    price = candles[-1].close if candles else 0.0
    parts = [
        f"{market} at ${price:,.2f}: {regime['trend'].replace('_', ' ')} "
        f"(strength {regime['trend_strength']}/100, {regime['regime']})"
    ]
    if "rsi" in indicators:
        parts.append(f"RSI {indicators['rsi']['value']:.1f}")
    if "volatility" in indicators:
        parts.append(f"volatility {indicators['volatility']['value']:.2f}%")
    if mtf:
        parts.append(f"{mtf['higher_timeframe']} trend {mtf['htf_trend']} ({mtf['alignment'].replace('_', ' ')})")

    return {
        "regime": regime,
        "multi_timeframe": mtf,
        "summary": ", ".join(parts),
    }
