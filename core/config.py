"""
Strategy configuration.

Strategies arrive as loosely-typed dicts (stored JSON or YAML) with optional
and legacy fields. resolve_strategy_config() applies the legacy migrations and
defaults once, at tick start, and validates the result into StrategyConfig so
the rest of the engine never re-derives a default at a check site.

Usage:
    from core.config import load_strategy_config

    config = load_strategy_config("config/strategy.example.yaml")
    config.min_confidence  # resolved precedence
"""
import copy
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from core.exceptions import TickConfigError

logger = logging.getLogger(__name__)

DEFAULT_MIN_CONFIDENCE = 0.65
DEFAULT_CADENCE_SECONDS = 30


class ExitMode(str, Enum):
    SIGNAL = "signal"
    TP_SL = "tp_sl"
    TRAILING = "trailing"
    TIME = "time"


class MarketProcessingMode(str, Enum):
    ALL = "all"
    ROUND_ROBIN = "round_robin"


# ===== Exit / trade control =====
class ExitRulesConfig(BaseModel):
    """Position exit rules (one mode active at a time)"""
    mode: ExitMode = Field(default=ExitMode.SIGNAL, description="Exit mode")
    take_profit_pct: Optional[float] = Field(default=None, gt=0, description="TP threshold (tp_sl)")
    stop_loss_pct: Optional[float] = Field(default=None, gt=0, description="SL threshold (tp_sl)")
    trailing_stop_pct: Optional[float] = Field(default=None, gt=0, description="Retracement from peak (trailing)")
    initial_stop_loss_pct: Optional[float] = Field(default=None, gt=0, description="Hard floor (trailing)")
    max_hold_minutes: Optional[float] = Field(default=None, gt=0, description="Max position age (time)")
    max_loss_protection_pct: Optional[float] = Field(default=None, gt=0, description="Emergency loss exit (signal)")
    max_profit_cap_pct: Optional[float] = Field(default=None, gt=0, description="Emergency profit exit (signal)")


class TradeControlConfig(BaseModel):
    """Trade pacing"""
    max_trades_per_hour: int = Field(default=2, ge=0, description="Rolling-hour cap (per session)")
    max_trades_per_day: int = Field(default=10, ge=0, description="Rolling-day cap (per session)")
    cooldown_minutes: float = Field(default=15, ge=0, description="Cooldown after last trade on a market")
    min_hold_minutes: float = Field(default=5, ge=0, description="Min age before exits/adds")
    allow_reentry_same_direction: bool = Field(default=False, description="Allow stacking")


class ConfidenceControlConfig(BaseModel):
    min_confidence: Optional[float] = Field(default=None, ge=0, le=1)
    confidence_scaling: bool = Field(default=False, description="Scale size 50-100% by confidence")


class GuardrailsConfig(BaseModel):
    min_confidence: Optional[float] = Field(default=None, ge=0, le=1, description="Legacy min confidence")
    allow_long: bool = True
    allow_short: bool = True


class RiskLimitsConfig(BaseModel):
    max_position_usd: float = Field(default=10000, gt=0)
    max_leverage: float = Field(default=2, gt=0)
    max_daily_loss_pct: float = Field(default=5, gt=0)


# ===== Entry =====
class EntryBehaviors(BaseModel):
    trend: bool = True
    breakout: bool = True
    mean_reversion: bool = True

    def enabled(self) -> List[str]:
        return [name for name in ("trend", "breakout", "mean_reversion") if getattr(self, name)]


class EntryConfirmationConfig(BaseModel):
    min_signals: int = Field(default=1, ge=1)
    require_volatility_condition: bool = False
    volatility_min: Optional[float] = Field(default=None, ge=0)
    volatility_max: Optional[float] = Field(default=None, ge=0)


DEFAULT_MAX_SLIPPAGE_PCT = 0.15
DEFAULT_ENTRY_SLIPPAGE_BPS = 30
MAX_ENTRY_SLIPPAGE_BPS = 100


class EntryTimingConfig(BaseModel):
    max_slippage_pct: Optional[float] = Field(default=None, ge=0, description="Percent, e.g. 0.15 = 0.15%")

    @property
    def slippage_limit_pct(self) -> float:
        if self.max_slippage_pct is None:
            return DEFAULT_MAX_SLIPPAGE_PCT
        return self.max_slippage_pct

    @property
    def order_slippage_bps(self) -> float:
        """Entry order tolerance: the configured max (as bps, capped at 100), else 30."""
        if not self.max_slippage_pct:
            return DEFAULT_ENTRY_SLIPPAGE_BPS
        return min(self.max_slippage_pct * 100, MAX_ENTRY_SLIPPAGE_BPS)


class EntryConfig(BaseModel):
    behaviors: EntryBehaviors = Field(default_factory=EntryBehaviors)
    confirmation: EntryConfirmationConfig = Field(default_factory=EntryConfirmationConfig)
    timing: EntryTimingConfig = Field(default_factory=EntryTimingConfig)


# ===== AI inputs =====
class CandleInputConfig(BaseModel):
    enabled: bool = True
    count: int = Field(default=200, gt=0, le=1000)
    timeframe: str = "5m"

    @field_validator("timeframe", mode="before")
    @classmethod
    def normalize_timeframe(cls, v: Union[str, int, float]) -> str:
        """Legacy numeric timeframes are minutes"""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return f"{int(v)}m"
        return str(v)


class OrderbookInputConfig(BaseModel):
    enabled: bool = True
    depth: int = Field(default=20, gt=0, le=100)


class PeriodIndicator(BaseModel):
    enabled: bool = True
    period: int = Field(default=14, gt=1)


class VolatilityIndicator(BaseModel):
    enabled: bool = True
    window: int = Field(default=50, gt=1)


class EmaIndicator(BaseModel):
    enabled: bool = True
    fast: int = Field(default=12, gt=1)
    slow: int = Field(default=26, gt=1)


class IndicatorInputConfig(BaseModel):
    rsi: PeriodIndicator = Field(default_factory=PeriodIndicator)
    atr: PeriodIndicator = Field(default_factory=PeriodIndicator)
    volatility: VolatilityIndicator = Field(default_factory=VolatilityIndicator)
    ema: EmaIndicator = Field(default_factory=EmaIndicator)

    def as_request(self) -> Dict[str, Dict[str, Any]]:
        """Shape accepted by ai.indicators.calculate_indicators"""
        return {
            "rsi": {"enabled": self.rsi.enabled, "period": self.rsi.period},
            "atr": {"enabled": self.atr.enabled, "period": self.atr.period},
            "volatility": {"enabled": self.volatility.enabled, "window": self.volatility.window},
            "ema": {"enabled": self.ema.enabled, "fast": self.ema.fast, "slow": self.ema.slow},
        }


class AiInputsConfig(BaseModel):
    candles: CandleInputConfig = Field(default_factory=CandleInputConfig)
    orderbook: OrderbookInputConfig = Field(default_factory=OrderbookInputConfig)
    indicators: IndicatorInputConfig = Field(default_factory=IndicatorInputConfig)
    include_htf_analysis: bool = True
    include_news: bool = True
    news_max_articles: int = Field(default=5, gt=0, le=10)
    include_recent_decisions: bool = True
    recent_decisions_count: int = Field(default=5, gt=0, le=15)
    include_recent_trades: bool = True
    recent_trades_count: int = Field(default=10, gt=0, le=20)
    include_positions: bool = True


class AgenticConfig(BaseModel):
    max_tool_calls: int = Field(default=10, ge=0)
    max_time_ms: int = Field(default=30000, gt=0)


# ===== Strategy =====
class StrategyConfig(BaseModel):
    """Fully resolved strategy configuration for one tick"""
    cadence_seconds: Optional[float] = Field(default=None, description="Overrides session cadence")
    markets: List[str] = Field(default_factory=list)
    market_processing_mode: MarketProcessingMode = MarketProcessingMode.ALL
    agentic_mode: bool = False
    agentic: AgenticConfig = Field(default_factory=AgenticConfig)
    ai_inputs: AiInputsConfig = Field(default_factory=AiInputsConfig)
    exit_rules: ExitRulesConfig = Field(default_factory=ExitRulesConfig)
    trade_control: TradeControlConfig = Field(default_factory=TradeControlConfig)
    confidence_control: ConfidenceControlConfig = Field(default_factory=ConfidenceControlConfig)
    guardrails: GuardrailsConfig = Field(default_factory=GuardrailsConfig)
    risk: RiskLimitsConfig = Field(default_factory=RiskLimitsConfig)
    entry: EntryConfig = Field(default_factory=EntryConfig)
    # Raw risk block presence, kept for proposed-order validation
    risk_limits_configured: bool = True

    @field_validator("markets")
    @classmethod
    def strip_markets(cls, v: List[str]) -> List[str]:
        seen = []
        for market in v:
            market = str(market).strip().upper()
            if market and market not in seen:
                seen.append(market)
        return seen

    @property
    def min_confidence(self) -> float:
        if self.confidence_control.min_confidence is not None:
            return self.confidence_control.min_confidence
        if self.guardrails.min_confidence is not None:
            return self.guardrails.min_confidence
        return DEFAULT_MIN_CONFIDENCE

    def effective_cadence(self, session_cadence: Optional[float] = None) -> float:
        """Strategy cadence, else session cadence, else 30s (0/None fall through)."""
        for value in (self.cadence_seconds, session_cadence):
            if value:
                return float(value)
        return float(DEFAULT_CADENCE_SECONDS)


def _migrate_entry_behaviors(entry: Dict[str, Any]) -> None:
    """Derive behaviors from the legacy single entry.mode field"""
    if "behaviors" in entry:
        behaviors = entry["behaviors"] or {}
        if "meanReversion" in behaviors and "mean_reversion" not in behaviors:
            behaviors["mean_reversion"] = behaviors.pop("meanReversion")
        return
    mode = entry.pop("mode", None)
    if mode in (None, "signal"):
        entry["behaviors"] = {"trend": True, "breakout": True, "mean_reversion": True}
        return
    mode = "mean_reversion" if mode in ("meanReversion", "mean_reversion") else mode
    if mode not in ("trend", "breakout", "mean_reversion"):
        raise TickConfigError(f"Unknown legacy entry mode: {mode}")
    entry["behaviors"] = {name: name == mode for name in ("trend", "breakout", "mean_reversion")}


def resolve_strategy_config(raw: Optional[Dict[str, Any]]) -> StrategyConfig:
    """
    Validate a raw strategy dict into StrategyConfig.

    Args:
        raw: Strategy filters blob (snake_case keys)

    Returns:
        StrategyConfig with all defaults applied

    Raises:
        TickConfigError: On invalid values
    """
    data = copy.deepcopy(raw or {})

    risk_raw = data.get("risk")
    data["risk_limits_configured"] = bool(
        isinstance(risk_raw, dict)
        and (risk_raw.get("max_position_usd") or 0) > 0
        and (risk_raw.get("max_leverage") or 0) > 0
    )

    entry = data.setdefault("entry", {}) or {}
    data["entry"] = entry
    _migrate_entry_behaviors(entry)

    cc_min = (data.get("confidence_control") or {}).get("min_confidence")
    legacy_min = (data.get("guardrails") or {}).get("min_confidence")
    if cc_min is not None and legacy_min is not None and cc_min != legacy_min:
        logger.warning(
            f"min_confidence set in both places: confidence_control={cc_min}, "
            f"guardrails={legacy_min}. Using confidence_control."
        )

    try:
        return StrategyConfig.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise TickConfigError(f"Invalid strategy config at {location}: {first.get('msg')}") from e


def load_strategy_config(path: Union[str, Path]) -> StrategyConfig:
    """Load a YAML strategy file and resolve it."""
    path = Path(path)
    if not path.exists():
        raise TickConfigError(f"Strategy config not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise TickConfigError(f"Strategy config must be a mapping: {path}")
    return resolve_strategy_config(data)
