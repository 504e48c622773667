"""
Tests for intent parsing.

Coverage:
- JSON extraction from surrounding prose
- Bias validation
- Clamping of confidence/risk and non-finite numbers
"""

import pytest

from ai.intent import Intent, TokenUsage, neutral_intent, parse_intent_json
from core.exceptions import IntentParseError


def test_parses_plain_json():
    intent = parse_intent_json(
        '{"bias": "long", "confidence": 0.82, "leverage": 2, "reasoning": "trend up"}', "BTC-PERP"
    )
    assert intent.market == "BTC-PERP"
    assert intent.bias == "long"
    assert intent.confidence == pytest.approx(0.82)
    assert intent.leverage == 2
    assert intent.reasoning == "trend up"


def test_tolerates_surrounding_prose():
    raw = 'Here is my call:\n{"bias": "short", "confidence": 0.7}\nGood luck!'
    intent = parse_intent_json(raw, "ETH-PERP")
    assert intent.bias == "short"
    assert intent.market == "ETH-PERP"


def test_bias_is_case_insensitive():
    assert parse_intent_json('{"bias": " LONG "}', "BTC-PERP").bias == "long"


def test_clamps_confidence_and_risk():
    intent = parse_intent_json('{"bias": "long", "confidence": 1.7, "risk": -3}', "BTC-PERP")
    assert intent.confidence == 1.0
    assert intent.risk == 0.0


def test_non_numeric_fields_default():
    intent = parse_intent_json(
        '{"bias": "hold", "confidence": "high", "stop_loss": "n/a", "leverage": null}', "BTC-PERP"
    )
    assert intent.confidence == 0.0
    assert intent.stop_loss == 0.0
    assert intent.leverage == 1.0


def test_entry_zone_defaults():
    intent = parse_intent_json('{"bias": "long", "entry_zone": {"lower": 99}}', "BTC-PERP")
    assert intent.entry_zone == {"lower": 99.0, "upper": 0.0}


class TestParseErrors:
    def test_empty_response(self):
        with pytest.raises(IntentParseError, match="Empty"):
            parse_intent_json("", "BTC-PERP")

    def test_no_object(self):
        with pytest.raises(IntentParseError, match="did not return JSON object"):
            parse_intent_json("I think we should go long", "BTC-PERP")

    def test_array_is_not_an_object(self):
        with pytest.raises(IntentParseError):
            parse_intent_json('[{"bias": "long"}]', "BTC-PERP")

    def test_invalid_bias(self):
        with pytest.raises(IntentParseError, match="Invalid bias"):
            parse_intent_json('{"bias": "moon"}', "BTC-PERP")

    def test_missing_bias(self):
        with pytest.raises(IntentParseError, match="Invalid bias"):
            parse_intent_json('{"confidence": 0.9}', "BTC-PERP")


def test_constructor_validates_bias():
    with pytest.raises(IntentParseError):
        Intent(market="BTC-PERP", bias="sideways")


def test_to_dict_omits_unset_position_side():
    data = Intent(market="BTC-PERP", bias="long", confidence=0.8).to_dict()
    assert "position_side" not in data
    closing = Intent(market="BTC-PERP", bias="close", position_side="long").to_dict()
    assert closing["position_side"] == "long"


def test_neutral_intent():
    intent = neutral_intent("BTC-PERP")
    assert intent.bias == "neutral"
    assert intent.confidence == 0.0
    assert intent.reasoning


def test_token_usage_accumulates():
    usage = TokenUsage()
    usage.add(100, 20)
    usage.add(50, None)
    assert usage.to_dict() == {"input_tokens": 150, "output_tokens": 20, "total_tokens": 170}
