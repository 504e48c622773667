"""
Entry-type classification.

Labels a proposed entry as trend, breakout or mean reversion so strategies
can allow only some entry styles. Indicators are checked first (EMA
divergence, ATR relative to price, RSI extremes); the model's reasoning text
is a keyword fallback when the indicators are inconclusive.

This is a heuristic. It is good enough to honour a strategy's style settings
but should not be treated as an authoritative label.
"""

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

TREND = "trend"
BREAKOUT = "breakout"
MEAN_REVERSION = "mean_reversion"
UNKNOWN = "unknown"

ENTRY_TYPE_LABELS = {
    TREND: "Trend",
    BREAKOUT: "Breakout",
    MEAN_REVERSION: "Mean Reversion",
}

EMA_DIVERGENCE_TREND_PCT = 1.0
ATR_BREAKOUT_PCT = 2.0
RSI_OVERSOLD = 30
RSI_OVERBOUGHT = 70

KEYWORDS = (
    (TREND, ("trend", "momentum", "uptrend", "downtrend")),
    (BREAKOUT, ("breakout", "break out", "resistance", "support")),
    (MEAN_REVERSION, ("reversion", "oversold", "overbought", "mean")),
)


def _value(indicators: Dict[str, Any], *path: str) -> Optional[float]:
    node: Any = indicators
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    if isinstance(node, dict):
        node = node.get("value")
    try:
        return float(node) if node is not None else None
    except (TypeError, ValueError):
        return None


def classify_from_indicators(indicators: Optional[Dict[str, Any]], price: float) -> str:
    if not indicators:
        return UNKNOWN

    fast = _value(indicators, "ema", "fast")
    slow = _value(indicators, "ema", "slow")
    if fast is not None and slow:
        if abs((fast - slow) / slow) * 100 > EMA_DIVERGENCE_TREND_PCT:
            return TREND

    atr = _value(indicators, "atr")
    if atr is not None and price > 0:
        if atr / price * 100 > ATR_BREAKOUT_PCT:
            return BREAKOUT

    rsi = _value(indicators, "rsi")
    if rsi is not None and (rsi < RSI_OVERSOLD or rsi > RSI_OVERBOUGHT):
        return MEAN_REVERSION

    return UNKNOWN


def classify_from_reasoning(reasoning: Optional[str]) -> str:
    text = (reasoning or "").lower()
    for entry_type, words in KEYWORDS:
        if any(word in text for word in words):
            return entry_type
    return UNKNOWN


def classify_entry(indicators: Optional[Dict[str, Any]], price: float,
                   reasoning: Optional[str]) -> str:
    """
    Classify a proposed entry.

    Returns:
        One of "trend", "breakout", "mean_reversion" or "unknown"
    """
    entry_type = classify_from_indicators(indicators, price)
    if entry_type == UNKNOWN:
        entry_type = classify_from_reasoning(reasoning)
    logger.debug(f"Entry classified as {entry_type}")
    return entry_type
