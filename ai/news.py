"""
Crypto headlines from CryptoCompare (free, no API key).

Articles are filtered to the last 24 hours, bodies are cut to 200 characters,
and results are cached per coin for 3 minutes. Any fetch failure returns None;
news is always an optional input.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from infra.retry import get_json_with_retry

log = logging.getLogger(__name__)

NEWS_URL = "https://min-api.cryptocompare.com/data/v2/news/"
CACHE_TTL_SECONDS = 180
FETCH_TIMEOUT_SECONDS = 5.0
MAX_AGE_HOURS = 24
BODY_CHARS = 200


@dataclass
class NewsArticle:
    title: str
    source: str
    published_at: datetime
    minutes_ago: float
    categories: str
    body: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "source": self.source,
            "published_at": self.published_at.isoformat(),
            "minutes_ago": round(self.minutes_ago, 1),
            "categories": self.categories,
            "body": self.body,
        }


@dataclass
class NewsResult:
    coin: str
    articles: List[NewsArticle] = field(default_factory=list)
    formatted_context: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "coin": self.coin,
            "articles": [a.to_dict() for a in self.articles],
            "formatted_context": self.formatted_context,
        }


def coin_for_market(market: str) -> str:
    return market.split("-")[0].upper()


def format_time_ago(minutes_ago: float) -> str:
    if minutes_ago < 1:
        return "just now"
    if minutes_ago < 60:
        return f"{int(minutes_ago)} min ago"
    hours = int(minutes_ago // 60)
    mins = int(minutes_ago % 60)
    if hours < 24:
        return f"{hours}h {mins}min ago" if mins > 0 else f"{hours}h ago"
    return f"{hours // 24}d ago"


class NewsService:
    """CryptoCompare fetcher with a per-coin TTL cache."""

    def __init__(self, session: Optional[requests.Session] = None,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], Any] = time.sleep):
        self._session = session or requests.Session()
        self._clock = clock
        self._sleep = sleep
        self._cache: Dict[str, Tuple[float, List[NewsArticle]]] = {}

    def fetch(self, market: str, max_articles: int = 5) -> Optional[NewsResult]:
        """Recent headlines for the market's coin, or None when unavailable."""
        coin = coin_for_market(market)
        now = self._clock()

        cached = self._cache.get(coin)
        if cached and now < cached[0]:
            articles = cached[1]
        else:
            try:
                payload = get_json_with_retry(
                    NEWS_URL,
                    params={"lang": "EN", "categories": coin},
                    timeout=FETCH_TIMEOUT_SECONDS,
                    session=self._session,
                    sleep=self._sleep,
                    max_retries=1,
                )
            except requests.Timeout:
                log.error(f"CryptoCompare request timed out for {coin}")
                return None
            except (requests.RequestException, ValueError) as e:
                log.error(f"Failed to fetch news for {coin}: {e}")
                return None

            articles = self._parse(payload, coin, now)
            if not articles:
                return None
            self._cache[coin] = (now + CACHE_TTL_SECONDS, articles)

        selected = articles[:max_articles]
        if not selected:
            return None
        return NewsResult(coin=coin, articles=selected, formatted_context=self._format(coin, selected, now))

    @staticmethod
    def _parse(payload: Any, coin: str, now: float) -> List[NewsArticle]:
        raw = payload.get("Data") if isinstance(payload, dict) else None
        if not isinstance(raw, list):
            return []

        max_age = MAX_AGE_HOURS * 3600
        articles = []
        for item in raw:
            published = float(item.get("published_on") or 0)
            if now - published >= max_age:
                continue
            body = (item.get("body") or "")[:BODY_CHARS]
            if len(body) == BODY_CHARS:
                body += "..."
            source_info = item.get("source_info") or {}
            articles.append(NewsArticle(
                title=item.get("title") or "Untitled",
                source=source_info.get("name") or item.get("source") or "Unknown",
                published_at=datetime.fromtimestamp(published, tz=timezone.utc),
                minutes_ago=(now - published) / 60,
                categories=item.get("categories") or coin,
                body=body,
            ))
        return articles

    @staticmethod
    def _format(coin: str, articles: List[NewsArticle], now: float) -> str:
        lines = [
            f"NEWS & EVENTS (recent headlines for {coin}):",
            f"Current time: {datetime.fromtimestamp(now, tz=timezone.utc).isoformat()}",
            "",
        ]
        for i, article in enumerate(articles, start=1):
            lines.append(f'{i}. [{format_time_ago(article.minutes_ago)}] "{article.title}" ({article.source})')
            lines.append(f"   Published: {article.published_at.isoformat()} | Categories: {article.categories}")
            if article.body:
                lines.append(f"   {article.body}")
            lines.append("")
        return "\n".join(lines)
