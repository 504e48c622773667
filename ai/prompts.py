"""
Prompts and context rendering for decision acquisition.

The passive prompt carries every prefetched input in one user message. The
agentic prompt starts from a minimal context and lets the model fetch the rest
through tools.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.models import Position

CORRECTIVE_RETRY_MESSAGE = (
    "Your response was not valid JSON. Output ONLY the JSON decision object "
    "with bias, confidence, reasoning, etc."
)
FORCE_FINAL_MESSAGE = (
    "You have used all available tool calls. Based on what you've gathered so far, "
    "output your final trading decision as JSON NOW."
)

_BIAS_OPTIONS = [
    "BIAS OPTIONS:",
    "- 'long': Bullish - ENTER a new long position (use only when NO position is open)",
    "- 'short': Bearish - ENTER a new short position (use only when NO position is open)",
    "- 'hold': KEEP current position open as-is (use only when a position IS open)",
    "- 'neutral': Stay flat, do nothing (use only when NO position is open)",
    "- 'close': EXIT current position to lock in profits, cut losses, or reduce risk "
    "(use only when a position IS open)",
]

PASSIVE_SYSTEM_PROMPT = "\n".join([
    "You are a trading decision engine that manages both entries AND exits.",
    "",
    "Return ONLY valid JSON (no markdown) matching this interface:",
    "{ market: string, bias: 'long'|'short'|'hold'|'neutral'|'close', confidence: number (0..1), "
    "entry_zone:{lower:number, upper:number}, stop_loss:number, take_profit:number, "
    "risk:number (0..1), leverage:number (1..max leverage), reasoning:string }",
    "",
    "LEVERAGE:",
    "- An absolute multiplier between 1 and the strategy's max leverage (see CONSTRAINTS)",
    "- Use higher leverage only for strong conviction, clear trend and good risk/reward",
    "- Use 1 when uncertain, counter-trend, or testing a thesis",
    "",
    *_BIAS_OPTIONS,
    "",
    "DECISION RULES BASED ON POSITION STATE:",
    "- If you HAVE an open position: choose 'hold', 'close', or the OPPOSITE direction to reverse",
    "- If you have NO open position: choose 'long', 'short', or 'neutral'",
    "",
    "WHEN TO USE 'close':",
    "1. PROFIT TAKING: position is profitable and you see signs of reversal",
    "2. RISK REDUCTION: conditions are becoming uncertain or volatile",
    "3. STOP LOSS: position is losing and conditions suggest further losses",
    "",
    "NOTE: 'close' and 'hold' are ONLY for when a position exists.",
])

AGENTIC_SYSTEM_PROMPT = """You are a trading decision engine with tools for gathering market data.

PROCESS:
1. You start with basic context: market, price, position, account state.
2. Use tools to gather the data YOU need for your analysis.
3. After gathering enough data, output your final decision as JSON.

AVAILABLE TOOLS:
- get_candles: Fetch historical OHLCV candles. Start here for price analysis.
- calculate_indicators: Compute RSI, ATR, volatility and EMA from fetched candles.
- run_market_analysis: Detect market regime and multi-timeframe alignment.
- get_orderbook: See current bid/ask depth and liquidity.
- get_news: Check recent crypto headlines and events.
- get_recent_decisions: Review your previous decisions (avoid flip-flopping).
- get_recent_trades: Review your recent trades and PnL.
- get_prices: Check prices of other markets for correlation analysis.
- get_positions: Check current portfolio and account state.

EFFICIENCY:
- Be selective. Don't call every tool if the situation is clear.
- If in a position, check recent decisions to remember your entry thesis.

FINAL OUTPUT:
When ready, output ONLY valid JSON (no markdown, no code blocks):
{"market":"...","bias":"...","confidence":0.0,"entry_zone":{"lower":0,"upper":0},"stop_loss":0,"take_profit":0,"risk":0.0,"leverage":1,"reasoning":"..."}

BIAS OPTIONS:
- "long": Enter long (only when NO position open)
- "short": Enter short (only when NO position open)
- "hold": Keep current position (only when position IS open)
- "neutral": Stay flat (only when NO position open)
- "close": Exit position (only when position IS open)

POSITION MANAGEMENT:
- Do NOT exit a position just because of small moves against you
- Only close if the trend has genuinely reversed, not a temporary pullback

NEWS RULES:
- News more than 2 hours old is likely already priced in
- News supplements technicals, never replaces them

COST AWARENESS:
- Each trade incurs fees. Very small expected moves may not justify the cost."""

_BEHAVIOR_LABELS = {
    "trend": ("trend-following", "trend-following (price moving in clear trend direction)"),
    "breakout": ("breakout", "breakout (price breaking through key support/resistance levels)"),
    "mean_reversion": ("mean reversion", "mean reversion (price deviating significantly from average)"),
}


def entry_instructions(enabled: List[str], verbose: bool = True) -> str:
    """Entry-type guidance; verbose for passive prompts, short for agentic ones."""
    if not enabled:
        return "No entry behaviors enabled. Do not enter any positions."
    labels = [_BEHAVIOR_LABELS[name][1 if verbose else 0] for name in enabled]
    if len(enabled) == len(_BEHAVIOR_LABELS):
        if verbose:
            return "All entry types allowed. Use AI-driven analysis to identify the best entry opportunities."
        return "All entry types allowed."
    if verbose:
        return f"Only these entry types are allowed: {', '.join(labels)}. Focus your analysis on these patterns only."
    return f"Only these entry types: {', '.join(labels)}."


@dataclass
class StrategyConstraints:
    market_type: str  # perpetual | spot
    max_leverage: float
    allow_long: bool
    allow_short: bool
    entry_behaviors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "market_type": self.market_type,
            "max_leverage": self.max_leverage,
            "allow_long": self.allow_long,
            "allow_short": self.allow_short,
            "entry_instructions": entry_instructions(self.entry_behaviors),
        }


@dataclass
class MarketContext:
    """Everything a model sees about one market in one tick."""
    prompt: str
    market: str
    current_price: float
    now: datetime
    account: Dict[str, float]
    constraints: StrategyConstraints
    position: Optional[Position] = None
    all_positions: List[Position] = field(default_factory=list)
    market_data: Dict[str, Any] = field(default_factory=dict)
    indicators: Dict[str, Any] = field(default_factory=dict)
    market_analysis: Optional[Dict[str, Any]] = None
    news_context: Optional[str] = None
    recent_decisions: List[Dict[str, Any]] = field(default_factory=list)
    recent_trades: List[Dict[str, Any]] = field(default_factory=list)


def position_to_dict(position: Position) -> Dict[str, Any]:
    return {
        "market": position.market,
        "side": position.side,
        "size": position.size,
        "avg_entry": position.avg_entry,
        "unrealized_pnl": position.unrealized_pnl,
        "leverage": position.leverage,
    }


def _fmt_money(value: float) -> str:
    return f"${value:,.2f}"


def format_indicators(indicators: Dict[str, Any]) -> Optional[str]:
    parts = []
    if "rsi" in indicators:
        parts.append(f"RSI({indicators['rsi']['period']}): {indicators['rsi']['value']:.1f}")
    if "atr" in indicators:
        parts.append(f"ATR({indicators['atr']['period']}): {indicators['atr']['value']:.4f}")
    if "volatility" in indicators:
        v = indicators["volatility"]
        parts.append(f"Volatility({v['window']}): {v['value']:.2f}%")
    for key in ("fast", "slow"):
        ema = (indicators.get("ema") or {}).get(key)
        if ema:
            parts.append(f"EMA({ema['period']}): {ema['value']:.2f}")
    if not parts:
        return None
    return "TECHNICAL INDICATORS:\n" + "\n".join(parts)


def format_recent_decisions(decisions: List[Dict[str, Any]]) -> Optional[str]:
    if not decisions:
        return None
    lines = []
    for i, d in enumerate(decisions, start=1):
        reason = f", Reason: {d['reasoning']}" if d.get("reasoning") else ""
        lines.append(
            f"{i}. [{d['timestamp']}] Bias: {d['bias']}, Confidence: {d['confidence'] * 100:.0f}%"
            f"{reason} -> {d['action_summary']}"
        )
    return (
        f"RECENT DECISIONS (your last {len(decisions)} decisions for context - use this to "
        f"maintain consistency and learn from past choices):\n" + "\n".join(lines)
    )


def format_recent_trades(trades: List[Dict[str, Any]]) -> Optional[str]:
    if not trades:
        return None
    lines = []
    for i, t in enumerate(trades, start=1):
        pnl = t.get("realized_pnl")
        pnl_str = f" -> PnL: {'+' if pnl >= 0 else '-'}${abs(pnl):.2f}" if pnl is not None else ""
        lines.append(
            f"{i}. [{t['timestamp']}] {t['action'].upper()} {t['side']} {t['market']} "
            f"@ ${t['price']:.2f} (size: {t['size']:.6f}){pnl_str}"
        )
    return (
        f"RECENT TRADES (last {len(trades)} executed trades - learn from actual outcomes):\n"
        + "\n".join(lines)
    )


def build_passive_user_message(ctx: MarketContext) -> str:
    position = ctx.position
    if position:
        position_line = (
            f"CURRENT POSITION: {position.side.upper()} {position.size} units @ "
            f"${position.avg_entry:.2f} entry, Unrealized PnL: ${position.unrealized_pnl:.2f}"
        )
    else:
        position_line = "CURRENT POSITION: None (flat)"

    parts = [
        f"Strategy prompt:\n{ctx.prompt}",
        f"Market: {ctx.market}",
        position_line,
        f"Account snapshot (JSON):\n{json.dumps(ctx.account)}",
        f"Market data snapshot (JSON):\n{json.dumps(ctx.market_data, default=str)}",
        f"All positions snapshot (JSON):\n{json.dumps([position_to_dict(p) for p in ctx.all_positions])}",
        f"Strategy constraints (JSON):\n{json.dumps(ctx.constraints.to_dict())}",
    ]
    for section in (
        format_indicators(ctx.indicators),
        f"MARKET ANALYSIS:\n{ctx.market_analysis['summary']}" if ctx.market_analysis else None,
        ctx.news_context,
        format_recent_decisions(ctx.recent_decisions),
        format_recent_trades(ctx.recent_trades),
    ):
        if section:
            parts.append(section)

    parts.append(
        "You have an open position. Choose: 'hold' to keep it, 'close' to exit, or the opposite direction to reverse."
        if position else
        "No open position. Choose: 'long' or 'short' to enter, or 'neutral' to stay flat."
    )
    parts.append("Respond with JSON only.")
    return "\n\n".join(parts)


def build_agentic_initial_message(ctx: MarketContext) -> str:
    parts = [
        f"STRATEGY PROMPT:\n{ctx.prompt}",
        f"MARKET: {ctx.market}\nCURRENT PRICE: ${ctx.current_price:.2f}\nTIMESTAMP: {ctx.now.isoformat()}",
    ]

    position = ctx.position
    if position:
        notional = position.avg_entry * position.size
        pnl_pct = position.unrealized_pnl / notional * 100 if notional else 0.0
        parts.append(
            f"CURRENT POSITION: {position.side.upper()} {position.size} @ ${position.avg_entry:.2f}, "
            f"Unrealized PnL: ${position.unrealized_pnl:.2f} ({pnl_pct:.2f}%)"
        )
    else:
        parts.append("CURRENT POSITION: None (flat)")

    account = ctx.account
    parts.append(
        f"ACCOUNT: Equity {_fmt_money(account.get('equity', 0.0))}, "
        f"Cash {_fmt_money(account.get('cash_balance', 0.0))}, "
        f"Return {account.get('total_return_pct', 0.0):.2f}%"
    )

    if ctx.all_positions:
        summary = ", ".join(
            f"{p.market}: {p.side} {p.size} @ ${p.avg_entry:.2f}" for p in ctx.all_positions
        )
        parts.append(f"ALL POSITIONS: {summary}")

    sc = ctx.constraints
    constraints = [f"Market: {sc.market_type}", f"Max Leverage: {sc.max_leverage:g}x"]
    if not sc.allow_long:
        constraints.append("LONG DISABLED")
    if not sc.allow_short:
        constraints.append("SHORT DISABLED")
    parts.append(f"CONSTRAINTS: {', '.join(constraints)}")
    parts.append(f"ENTRY TYPES: {entry_instructions(sc.entry_behaviors, verbose=False)}")
    parts.append("Use tools to gather data, then output your trading decision as JSON.")
    return "\n\n".join(parts)
