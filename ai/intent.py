"""
Intent: the model's structured trading recommendation.

The model answers with one JSON object. parse_intent_json() pulls the first
top-level object out of free text (surrounding prose is tolerated), rejects an
unknown bias, and clamps the numeric fields into range.
"""

import json
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Literal, Optional

from core.exceptions import IntentParseError

Bias = Literal["long", "short", "hold", "neutral", "close"]
VALID_BIASES = ("long", "short", "hold", "neutral", "close")

NEUTRAL_REASONING = "Agentic loop did not produce a valid decision"


def _finite(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def _clamp01(value: Any) -> float:
    return max(0.0, min(1.0, _finite(value, 0.0)))


@dataclass
class Intent:
    market: str
    bias: Bias
    confidence: float = 0.0
    entry_zone: Dict[str, float] = field(default_factory=lambda: {"lower": 0.0, "upper": 0.0})
    stop_loss: float = 0.0
    take_profit: float = 0.0
    risk: float = 0.0
    leverage: float = 1.0
    reasoning: str = ""
    # Set when an intent is rewritten into an exit
    position_side: Optional[str] = None

    def __post_init__(self):
        if self.bias not in VALID_BIASES:
            raise IntentParseError(
                f"Invalid bias: must be one of {', '.join(repr(b) for b in VALID_BIASES)}"
            )
        self.confidence = _clamp01(self.confidence)
        self.risk = _clamp01(self.risk)
        self.leverage = _finite(self.leverage, 1.0)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data["position_side"] is None:
            data.pop("position_side")
        return data


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, input_tokens: int, output_tokens: int) -> None:
        self.input_tokens += input_tokens or 0
        self.output_tokens += output_tokens or 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class IntentWithUsage:
    intent: Intent
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: str = ""
    tool_calls: int = 0


def neutral_intent(market: str, reasoning: str = NEUTRAL_REASONING) -> Intent:
    return Intent(market=market, bias="neutral", confidence=0.0, reasoning=reasoning)


def _extract_object(raw: str) -> Dict[str, Any]:
    text = raw.strip()
    start = text.find("{")
    if start < 0:
        raise IntentParseError("Model did not return JSON object")

    try:
        obj, _ = json.JSONDecoder().raw_decode(text, start)
    except json.JSONDecodeError:
        end = text.rfind("}")
        if end <= start:
            raise IntentParseError("Model did not return JSON object")
        try:
            obj = json.loads(text[start:end + 1])
        except json.JSONDecodeError as e:
            raise IntentParseError(f"Invalid JSON in model response: {e}") from e

    if not isinstance(obj, dict):
        raise IntentParseError("Model did not return JSON object")
    return obj


def parse_intent_json(raw: Optional[str], market: str) -> Intent:
    """
    Parse model text into an Intent.

    Args:
        raw: Model output, possibly with prose around the JSON
        market: Market the intent was requested for (default for a missing market)

    Raises:
        IntentParseError: No JSON object, malformed JSON, or invalid bias
    """
    if not raw:
        raise IntentParseError("Empty model response")
    obj = _extract_object(raw)

    bias = obj.get("bias")
    if isinstance(bias, str):
        bias = bias.strip().lower()
    if bias not in VALID_BIASES:
        raise IntentParseError(
            f"Invalid bias: must be one of {', '.join(repr(b) for b in VALID_BIASES)}"
        )

    zone = obj.get("entry_zone") if isinstance(obj.get("entry_zone"), dict) else {}
    return Intent(
        market=str(obj.get("market") or market),
        bias=bias,
        confidence=obj.get("confidence"),
        entry_zone={
            "lower": _finite(zone.get("lower"), 0.0),
            "upper": _finite(zone.get("upper"), 0.0),
        },
        stop_loss=_finite(obj.get("stop_loss"), 0.0),
        take_profit=_finite(obj.get("take_profit"), 0.0),
        risk=obj.get("risk"),
        leverage=obj.get("leverage", 1),
        reasoning=str(obj.get("reasoning") or ""),
    )
