"""
Decision acquisition: get an Intent for one market.

Passive mode prefetches every configured input and makes a single model call.
Agentic mode hands the model a minimal context plus tools (see agentic_loop).
Agentic mode is used only when the strategy enables it and the provider
supports tool calling.

Each prefetch input is optional: a failure logs a warning and the input is
left out. AIProviderError always propagates to the caller.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

from ai.agentic_loop import AgenticLoop
from ai.indicators import analyze_market, calculate_indicators, higher_timeframe
from ai.intent import IntentWithUsage, TokenUsage, neutral_intent, parse_intent_json
from ai.model_client import ChatMessage, ModelClient, ModelResponse
from ai.news import NewsService
from ai.prompts import (
    PASSIVE_SYSTEM_PROMPT,
    MarketContext,
    build_agentic_initial_message,
    build_passive_user_message,
)
from ai.tools import (
    MarketAnalyzer,
    ToolContext,
    ToolExecutor,
    recent_decisions_payload,
    recent_trades_payload,
)
from core.config import StrategyConfig
from core.exceptions import IntentParseError

log = logging.getLogger(__name__)

HTF_CANDLE_COUNT = 100


class DecisionAcquisition:
    """Chooses passive or agentic mode and returns IntentWithUsage."""

    def __init__(self, news: Optional[NewsService] = None,
                 analyzer: Optional[MarketAnalyzer] = None,
                 metrics=None,
                 clock: Callable[[], float] = time.monotonic):
        self.news = news
        self.analyzer = analyzer or analyze_market
        self.metrics = metrics
        self.clock = clock

    @staticmethod
    def uses_agentic(client: ModelClient, config: StrategyConfig) -> bool:
        return bool(config.agentic_mode and client.supports_tools)

    def acquire(self, client: ModelClient, config: StrategyConfig,
                ctx: MarketContext, tool_ctx: ToolContext) -> IntentWithUsage:
        if self.uses_agentic(client, config):
            log.info(f"Acquiring decision for {ctx.market} in agentic mode ({client.provider}/{client.model})")
            tool_ctx.news = tool_ctx.news or self.news
            tool_ctx.analyzer = self.analyzer
            loop = AgenticLoop(
                client,
                ToolExecutor(tool_ctx),
                ctx.market,
                max_tool_calls=config.agentic.max_tool_calls,
                max_time_ms=config.agentic.max_time_ms,
                clock=self.clock,
                on_response=lambda response, seconds: self._record_call(client, response, seconds),
            )
            return loop.run(build_agentic_initial_message(ctx))

        self.prefetch(ctx, config, tool_ctx)
        return self.passive(client, ctx)

    def passive(self, client: ModelClient, ctx: MarketContext) -> IntentWithUsage:
        start = self.clock()
        response = client.complete(
            PASSIVE_SYSTEM_PROMPT,
            [ChatMessage(role="user", content=build_passive_user_message(ctx))],
        )
        self._record_call(client, response, self.clock() - start)

        usage = TokenUsage(response.input_tokens, response.output_tokens)
        try:
            intent = parse_intent_json(response.text, ctx.market)
        except IntentParseError as e:
            log.warning(f"Could not parse intent for {ctx.market}: {e}")
            intent = neutral_intent(ctx.market, reasoning=f"Model response could not be parsed: {e}")
        return IntentWithUsage(intent=intent, usage=usage, model=client.model)

    def prefetch(self, ctx: MarketContext, config: StrategyConfig, tool_ctx: ToolContext) -> None:
        """Fill ctx with every enabled optional input."""
        inputs = config.ai_inputs
        market_data = tool_ctx.market_data
        venue = tool_ctx.venue
        ctx.market_data.setdefault("price", ctx.current_price)

        candles = []
        if inputs.candles.enabled:
            try:
                candles = market_data.get_candles(venue, ctx.market, inputs.candles.timeframe, inputs.candles.count)
                ctx.market_data["candles"] = [c.to_dict() for c in candles]
                ctx.market_data["timeframe"] = inputs.candles.timeframe
            except Exception as e:
                log.warning(f"Candle fetch failed for {ctx.market}, continuing without candles: {e}")

        if inputs.orderbook.enabled:
            try:
                book = market_data.get_orderbook(venue, ctx.market, inputs.orderbook.depth)
                ctx.market_data["orderbook"] = book.to_dict(inputs.orderbook.depth)
            except Exception as e:
                log.warning(f"Orderbook fetch failed for {ctx.market}: {e}")

        if candles:
            try:
                ctx.indicators = calculate_indicators(candles, inputs.indicators.as_request())
            except Exception as e:
                log.warning(f"Indicator calculation failed for {ctx.market}: {e}")

            if inputs.include_htf_analysis:
                ctx.market_analysis = self._analyze(ctx, config, tool_ctx, candles)

        if inputs.include_news and self.news is not None:
            try:
                result = self.news.fetch(ctx.market, inputs.news_max_articles)
                ctx.news_context = result.formatted_context if result else None
            except Exception as e:
                log.warning(f"News fetch failed for {ctx.market}: {e}")

        if inputs.include_recent_decisions:
            try:
                ctx.recent_decisions = recent_decisions_payload(
                    tool_ctx.store, tool_ctx.session_id, inputs.recent_decisions_count
                )
            except Exception as e:
                log.warning(f"Recent decisions unavailable for {ctx.market}: {e}")

        if inputs.include_recent_trades:
            try:
                ctx.recent_trades = recent_trades_payload(
                    tool_ctx.store, tool_ctx.book, tool_ctx.account_id, tool_ctx.session_id,
                    inputs.recent_trades_count,
                )
            except Exception as e:
                log.warning(f"Recent trades unavailable for {ctx.market}: {e}")

        if not inputs.include_positions:
            ctx.position = None
            ctx.all_positions = []

    def _analyze(self, ctx: MarketContext, config: StrategyConfig, tool_ctx: ToolContext,
                 candles) -> Optional[Dict[str, Any]]:
        timeframe = config.ai_inputs.candles.timeframe
        htf_indicators = None
        htf = higher_timeframe(timeframe)
        if htf:
            try:
                htf_candles = tool_ctx.market_data.get_candles(tool_ctx.venue, ctx.market, htf, HTF_CANDLE_COUNT)
                htf_indicators = calculate_indicators(htf_candles, {
                    "rsi": {"enabled": True, "period": 14},
                    "ema": {"enabled": True, "fast": 12, "slow": 26},
                })
            except Exception as e:
                log.warning(f"Higher-timeframe candles ({htf}) unavailable for {ctx.market}: {e}")
        try:
            return self.analyzer(ctx.market, candles, ctx.indicators,
                                 htf_indicators=htf_indicators, timeframe=timeframe)
        except Exception as e:
            log.warning(f"Market analysis failed for {ctx.market}: {e}")
            return None

    def _record_call(self, client: ModelClient, response: ModelResponse, seconds: float) -> None:
        if self.metrics is not None:
            self.metrics.record_model_call(
                client.provider, seconds, response.input_tokens, response.output_tokens
            )
