"""
Agentic tool catalogue and executor.

Each tool has a JSON-Schema parameter contract and returns a JSON string. Tool
failures never raise: they come back to the model as {"error": ...} so it can
adjust. Candles fetched by get_candles are cached per interval for the rest of
the loop; calculate_indicators and run_market_analysis read from that cache.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ai.indicators import HTF_MAP, analyze_market, calculate_indicators
from ai.model_client import ToolDefinition
from ai.news import NewsService
from ai.prompts import position_to_dict
from core.models import Position
from core.ports import Candle, MarketDataPort

log = logging.getLogger(__name__)

CANDLE_INTERVALS = ["1m", "3m", "5m", "15m", "30m", "1h", "2h", "4h", "8h", "12h", "1d"]

MarketAnalyzer = Callable[..., Dict[str, Any]]

TOOL_DEFINITIONS: List[ToolDefinition] = [
    ToolDefinition(
        name="get_candles",
        description=(
            "Fetch historical price candles (OHLCV) for the current market. Use this to analyze "
            "price patterns and trends. Call multiple times with different intervals for "
            "multi-timeframe analysis."
        ),
        parameters={
            "type": "object",
            "properties": {
                "interval": {"type": "string", "enum": CANDLE_INTERVALS, "description": "Candle timeframe"},
                "count": {"type": "number", "description": "Number of candles to fetch (default 100, max 300)"},
            },
            "required": ["interval"],
        },
    ),
    ToolDefinition(
        name="get_orderbook",
        description="Fetch the current order book with bid/ask levels. Use to assess liquidity and spread.",
        parameters={
            "type": "object",
            "properties": {
                "depth": {"type": "number", "description": "Levels on each side (default 10, max 50)"},
            },
            "required": [],
        },
    ),
    ToolDefinition(
        name="get_prices",
        description="Fetch current mid prices for one or more markets (correlated assets).",
        parameters={
            "type": "object",
            "properties": {
                "markets": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Markets to price (max 5). Defaults to the current market.",
                },
            },
            "required": [],
        },
    ),
    ToolDefinition(
        name="calculate_indicators",
        description=(
            "Calculate technical indicators from previously fetched candles. You MUST call "
            "get_candles for the same interval first."
        ),
        parameters={
            "type": "object",
            "properties": {
                "interval": {"type": "string", "description": "Interval of a previous get_candles call"},
                "indicators": {
                    "type": "object",
                    "description": "Which indicators to calculate",
                    "properties": {
                        "rsi": {"type": "object", "properties": {"period": {"type": "number"}}},
                        "atr": {"type": "object", "properties": {"period": {"type": "number"}}},
                        "volatility": {"type": "object", "properties": {"window": {"type": "number"}}},
                        "ema": {
                            "type": "object",
                            "properties": {"fast": {"type": "number"}, "slow": {"type": "number"}},
                        },
                    },
                },
            },
            "required": ["interval", "indicators"],
        },
    ),
    ToolDefinition(
        name="run_market_analysis",
        description=(
            "Detect market regime and multi-timeframe alignment. Requires candles for the "
            "primary interval to have been fetched first."
        ),
        parameters={
            "type": "object",
            "properties": {
                "primary_interval": {"type": "string", "description": "Primary candle interval (default '5m')"},
                "htf_interval": {"type": "string", "description": "Higher timeframe. Auto-selected if omitted."},
            },
            "required": [],
        },
    ),
    ToolDefinition(
        name="get_news",
        description="Fetch recent crypto news headlines for the current market.",
        parameters={
            "type": "object",
            "properties": {
                "max_articles": {"type": "number", "description": "Maximum articles (default 5, max 10)"},
            },
            "required": [],
        },
    ),
    ToolDefinition(
        name="get_recent_decisions",
        description="Retrieve your recent decisions for this session. Use to avoid flip-flopping.",
        parameters={
            "type": "object",
            "properties": {
                "count": {"type": "number", "description": "Number of recent decisions (default 5, max 15)"},
            },
            "required": [],
        },
    ),
    ToolDefinition(
        name="get_recent_trades",
        description="Retrieve recent trade executions for this session with fill prices and PnL.",
        parameters={
            "type": "object",
            "properties": {
                "count": {"type": "number", "description": "Number of recent trades (default 10, max 20)"},
            },
            "required": [],
        },
    ),
    ToolDefinition(
        name="get_positions",
        description="Get current positions across all markets, account equity and cash balance.",
        parameters={"type": "object", "properties": {}, "required": []},
    ),
]


def _bounded(value: Any, default: int, maximum: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    if number <= 0:
        return default
    return min(number, maximum)


def recent_decisions_payload(store, session_id: str, count: int) -> List[Dict[str, Any]]:
    """Recent decisions, newest first, in the shape shown to models."""
    return [
        {
            "timestamp": d.created_at.isoformat(),
            "bias": d.intent.get("bias"),
            "confidence": d.confidence,
            "reasoning": d.intent.get("reasoning"),
            "action_summary": d.action_summary,
            "executed": d.executed,
        }
        for d in store.list_decisions(session_id, limit=count)
    ]


def recent_trades_payload(store, book: str, account_id: str, session_id: str,
                          count: int) -> List[Dict[str, Any]]:
    return [
        {
            "timestamp": t.created_at.isoformat(),
            "market": t.market,
            "side": t.side,
            "action": t.action,
            "price": t.price,
            "size": t.size,
            "realized_pnl": t.realized_pnl if t.action != "open" else None,
        }
        for t in store.list_trades(book, account_id, session_id=session_id, limit=count)
    ]


@dataclass
class ToolContext:
    """What the tools can see for one market in one tick."""
    market_data: MarketDataPort
    venue: str
    store: Any
    book: str
    session_id: str
    account_id: str
    market: str
    current_price: float
    account: Dict[str, float]
    position: Optional[Position] = None
    all_positions: List[Position] = field(default_factory=list)
    news: Optional[NewsService] = None
    analyzer: MarketAnalyzer = analyze_market


class ToolExecutor:
    """Runs tool calls for one agentic loop; owns that loop's candle cache."""

    def __init__(self, ctx: ToolContext):
        self.ctx = ctx
        self.candle_cache: Dict[str, List[Candle]] = {}
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Any]] = {
            "get_candles": self._get_candles,
            "get_orderbook": self._get_orderbook,
            "get_prices": self._get_prices,
            "calculate_indicators": self._calculate_indicators,
            "run_market_analysis": self._run_market_analysis,
            "get_news": self._get_news,
            "get_recent_decisions": self._get_recent_decisions,
            "get_recent_trades": self._get_recent_trades,
            "get_positions": self._get_positions,
        }

    def execute(self, name: str, args: Optional[Dict[str, Any]]) -> str:
        handler = self._handlers.get(name)
        if handler is None:
            return json.dumps({"error": f"Unknown tool: {name}"})
        try:
            result = handler(args or {})
        except Exception as e:
            log.error(f"Tool {name} failed: {e}")
            return json.dumps({"error": f"Tool {name} failed: {e}"})
        return result if isinstance(result, str) else json.dumps(result, default=str)

    def _fetch_candles(self, interval: str, count: int) -> List[Candle]:
        candles = self.ctx.market_data.get_candles(self.ctx.venue, self.ctx.market, interval, count)
        self.candle_cache[interval] = candles
        return candles

    def _get_candles(self, args: Dict[str, Any]) -> Dict[str, Any]:
        interval = args.get("interval") or "5m"
        count = _bounded(args.get("count"), 100, 300)
        candles = self._fetch_candles(interval, count)
        return {
            "market": self.ctx.market,
            "interval": interval,
            "count": len(candles),
            "candles": [c.to_dict() for c in candles],
        }

    def _get_orderbook(self, args: Dict[str, Any]) -> Dict[str, Any]:
        depth = _bounded(args.get("depth"), 10, 50)
        book = self.ctx.market_data.get_orderbook(self.ctx.venue, self.ctx.market, depth)
        return book.to_dict(depth)

    def _get_prices(self, args: Dict[str, Any]) -> Dict[str, float]:
        markets = args.get("markets") or [self.ctx.market]
        if isinstance(markets, str):
            markets = [markets]
        return self.ctx.market_data.get_prices(self.ctx.venue, list(markets)[:5])

    def _calculate_indicators(self, args: Dict[str, Any]) -> Dict[str, Any]:
        interval = args.get("interval") or "5m"
        candles = self.candle_cache.get(interval)
        if not candles:
            return {
                "error": f"No candles cached for interval '{interval}'. "
                         f"Call get_candles with this interval first."
            }
        requested = args.get("indicators") or {}
        config = {
            key: {"enabled": True, **(value if isinstance(value, dict) else {})}
            for key, value in requested.items()
        }
        if "ema" in config:
            config["ema"].setdefault("fast", 12)
            config["ema"].setdefault("slow", 26)
        return {"interval": interval, "indicators": calculate_indicators(candles, config)}

    def _run_market_analysis(self, args: Dict[str, Any]) -> Dict[str, Any]:
        primary = args.get("primary_interval") or "5m"
        htf = args.get("htf_interval") or HTF_MAP.get(primary, "1h")

        candles = self.candle_cache.get(primary)
        if not candles:
            return {"error": f"No candles cached for '{primary}'. Call get_candles first."}

        htf_candles = self.candle_cache.get(htf) or self._fetch_candles(htf, 100)

        config = {
            "rsi": {"enabled": True, "period": 14},
            "ema": {"enabled": True, "fast": 12, "slow": 26},
        }
        return self.ctx.analyzer(
            self.ctx.market,
            candles,
            calculate_indicators(candles, config),
            htf_indicators=calculate_indicators(htf_candles, config),
            timeframe=primary,
        )

    def _get_news(self, args: Dict[str, Any]) -> Any:
        max_articles = _bounded(args.get("max_articles"), 5, 10)
        result = self.ctx.news.fetch(self.ctx.market, max_articles) if self.ctx.news else None
        if result is None:
            return {"articles": [], "message": "No news available"}
        return result.formatted_context

    def _get_recent_decisions(self, args: Dict[str, Any]) -> Dict[str, Any]:
        count = _bounded(args.get("count"), 5, 15)
        decisions = recent_decisions_payload(self.ctx.store, self.ctx.session_id, count)
        if not decisions:
            return {"decisions": [], "message": "No previous decisions"}
        return {"decisions": decisions}

    def _get_recent_trades(self, args: Dict[str, Any]) -> Dict[str, Any]:
        count = _bounded(args.get("count"), 10, 20)
        trades = recent_trades_payload(
            self.ctx.store, self.ctx.book, self.ctx.account_id, self.ctx.session_id, count
        )
        if not trades:
            return {"trades": [], "message": "No previous trades"}
        return {"trades": trades}

    def _get_positions(self, args: Dict[str, Any]) -> Dict[str, Any]:
        account = self.ctx.account
        starting = account.get("starting_equity") or 0.0
        equity = account.get("equity", 0.0)
        return {
            "account": {
                "equity": equity,
                "cash_balance": account.get("cash_balance", 0.0),
                "starting_equity": starting,
                "total_return_pct": (equity - starting) / starting * 100 if starting else 0.0,
            },
            "current_market_position": position_to_dict(self.ctx.position) if self.ctx.position else None,
            "all_positions": [position_to_dict(p) for p in self.ctx.all_positions],
            "position_count": len(self.ctx.all_positions),
        }
