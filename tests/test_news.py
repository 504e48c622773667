"""
Tests for the news service.
"""

from unittest.mock import Mock

import pytest
import requests

from ai.news import NewsService, coin_for_market, format_time_ago

NOW_TS = 1_768_478_400.0  # 2026-01-15T12:00:00Z


def payload(*ages_minutes, body="Short body"):
    return {"Data": [
        {
            "title": f"Headline {i}",
            "published_on": NOW_TS - age * 60,
            "body": body,
            "categories": "BTC|Market",
            "source_info": {"name": "CoinDesk"},
        }
        for i, age in enumerate(ages_minutes)
    ]}


def session_returning(data):
    session = Mock()
    session.get.return_value.json.return_value = data
    return session


def test_coin_for_market():
    assert coin_for_market("btc-perp") == "BTC"
    assert coin_for_market("ETH-USD") == "ETH"


@pytest.mark.parametrize("minutes,expected", [
    (0.5, "just now"),
    (12, "12 min ago"),
    (60, "1h ago"),
    (95, "1h 35min ago"),
    (60 * 50, "2d ago"),
])
def test_format_time_ago(minutes, expected):
    assert format_time_ago(minutes) == expected


class TestFetch:
    def test_filters_old_articles_and_formats(self):
        session = session_returning(payload(5, 30, 60 * 25))
        result = NewsService(session=session, clock=lambda: NOW_TS).fetch("BTC-PERP")
        assert result.coin == "BTC"
        assert [a.title for a in result.articles] == ["Headline 0", "Headline 1"]
        assert result.articles[0].source == "CoinDesk"
        assert result.formatted_context.startswith("NEWS & EVENTS (recent headlines for BTC):")
        assert '1. [5 min ago] "Headline 0" (CoinDesk)' in result.formatted_context
        session.get.assert_called_once()
        assert session.get.call_args.kwargs["params"] == {"lang": "EN", "categories": "BTC"}

    def test_limits_articles(self):
        result = NewsService(session=session_returning(payload(1, 2, 3, 4)), clock=lambda: NOW_TS).fetch(
            "BTC-PERP", max_articles=2
        )
        assert len(result.articles) == 2

    def test_body_truncated(self):
        result = NewsService(session=session_returning(payload(1, body="x" * 500)), clock=lambda: NOW_TS).fetch(
            "BTC-PERP"
        )
        assert result.articles[0].body == "x" * 200 + "..."

    def test_cached_for_three_minutes(self):
        now = [NOW_TS]
        session = session_returning(payload(1))
        service = NewsService(session=session, clock=lambda: now[0])
        service.fetch("BTC-PERP")
        now[0] += 120
        service.fetch("BTC-PERP")
        assert session.get.call_count == 1
        now[0] += 61
        service.fetch("BTC-PERP")
        assert session.get.call_count == 2

    def test_timeout_returns_none(self):
        session = Mock()
        session.get.side_effect = requests.Timeout("slow")
        assert NewsService(session=session, clock=lambda: NOW_TS).fetch("BTC-PERP") is None

    def test_bad_payload_returns_none(self):
        assert NewsService(session=session_returning({"Data": "oops"}), clock=lambda: NOW_TS).fetch(
            "BTC-PERP"
        ) is None

    def test_no_recent_articles_returns_none(self):
        assert NewsService(session=session_returning(payload(60 * 30)), clock=lambda: NOW_TS).fetch(
            "BTC-PERP"
        ) is None
