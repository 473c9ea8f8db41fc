"""Finnhub market data and company news client."""

import logging
from datetime import date, datetime, timezone
from typing import Any, Optional

import httpx

from marketpulse.config import Settings, settings as default_settings
from marketpulse.errors import ConfigurationError, ProviderError, RateLimitExceededError
from marketpulse.infra.rate_limiter import RateLimiter
from marketpulse.ingest.base import MarketDataProvider, NewsArticle, NewsProvider, Quote

logger = logging.getLogger(__name__)

RATE_LIMIT_KEY = "finnhub:api"


class FinnhubClient(MarketDataProvider, NewsProvider):
    """
    Finnhub REST client.

    Every request first counts against the shared ``finnhub:api`` window so
    all worker processes together stay under the plan's per-minute quota.
    """

    def __init__(
        self,
        limiter: RateLimiter,
        config: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.limiter = limiter
        self.config = config or default_settings
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            if not self.config.finnhub_api_key:
                raise ConfigurationError("FINNHUB_API_KEY is not configured")
            self._client = httpx.AsyncClient(
                base_url=self.config.finnhub_base_url,
                timeout=self.config.provider_timeout_seconds,
                params={"token": self.config.finnhub_api_key},
            )
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _get(self, path: str, params: dict[str, Any]) -> Any:
        limited = await self.limiter.is_rate_limited(
            RATE_LIMIT_KEY,
            self.config.finnhub_rate_limit,
            self.config.finnhub_rate_window_seconds,
        )
        if limited:
            raise RateLimitExceededError(RATE_LIMIT_KEY)

        client = await self._get_client()
        try:
            response = await client.get(path, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise ProviderError(f"Finnhub request {path} failed: {e}") from e
        except ValueError as e:
            raise ProviderError(f"Finnhub returned invalid JSON for {path}: {e}") from e

    async def get_quote(self, ticker: str) -> Optional[Quote]:
        """
        Get the real-time quote for a symbol.

        Returns:
            Quote, or None when Finnhub has no price for the symbol
        """
        data = await self._get("/quote", {"symbol": ticker})
        if not isinstance(data, dict) or not data.get("c"):
            logger.warning(f"Invalid quote response from Finnhub for {ticker}: {data}")
            return None

        price = float(data["c"])
        previous_close = data.get("pc")
        change_percent = data.get("dp")
        if change_percent is None and previous_close:
            change_percent = (price - previous_close) / previous_close * 100

        timestamp = None
        if data.get("t"):
            timestamp = datetime.fromtimestamp(data["t"], tz=timezone.utc)

        return Quote(
            ticker=ticker,
            price=price,
            change_percent=float(change_percent or 0.0),
            volume=float(data["v"]) if data.get("v") is not None else None,
            high=data.get("h"),
            low=data.get("l"),
            open=data.get("o"),
            previous_close=previous_close,
            timestamp=timestamp,
        )

    async def company_news(self, ticker: str, start: date, end: date) -> list[NewsArticle]:
        """Company news between two dates (inclusive)."""
        data = await self._get(
            "/company-news",
            {"symbol": ticker, "from": start.isoformat(), "to": end.isoformat()},
        )
        if not isinstance(data, list):
            logger.warning(f"Unexpected news response from Finnhub for {ticker}")
            return []

        articles = []
        for item in data:
            if not item.get("id") or not item.get("headline"):
                continue
            articles.append(
                NewsArticle(
                    external_id=f"finnhub-{item['id']}",
                    ticker=ticker,
                    headline=item["headline"],
                    source=item.get("source", ""),
                    url=item.get("url", ""),
                    published_at=datetime.fromtimestamp(item.get("datetime", 0), tz=timezone.utc),
                    summary=item.get("summary", ""),
                    sentiment=item.get("sentiment"),
                )
            )
        logger.debug(f"Fetched {len(articles)} news articles for {ticker}")
        return articles
