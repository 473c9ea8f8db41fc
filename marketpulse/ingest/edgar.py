"""SEC EDGAR filings client."""

import logging
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

import httpx

from marketpulse.config import Settings, settings as default_settings
from marketpulse.errors import ProviderError, RateLimitExceededError
from marketpulse.infra.cache import CacheKeys, CacheService, CacheTTL
from marketpulse.infra.rate_limiter import RateLimiter
from marketpulse.ingest.base import Filing, FilingProvider

logger = logging.getLogger(__name__)

RATE_LIMIT_KEY = "edgar:api"
TICKER_MAP_URL = "https://www.sec.gov/files/company_tickers.json"
SUBMISSIONS_URL = "https://data.sec.gov/submissions/CIK{cik}.json"
ARCHIVE_URL = "https://www.sec.gov/Archives/edgar/data/{cik}/{accession}/{document}"

DEFAULT_FORMS = ("10-K", "10-Q", "8-K")


class EdgarClient(FilingProvider):
    """
    Reads recent filings from the EDGAR submissions API.

    EDGAR requires a descriptive User-Agent and allows about ten requests per
    second; the ticker to CIK map is cached for a day.
    """

    def __init__(
        self,
        limiter: RateLimiter,
        cache: CacheService,
        config: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.limiter = limiter
        self.cache = cache
        self.config = config or default_settings
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.provider_timeout_seconds,
                headers={"User-Agent": self.config.edgar_user_agent},
            )
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _get_json(self, url: str) -> Any:
        limited = await self.limiter.is_rate_limited(
            RATE_LIMIT_KEY,
            self.config.edgar_rate_limit,
            self.config.edgar_rate_window_seconds,
        )
        if limited:
            raise RateLimitExceededError(RATE_LIMIT_KEY)

        client = await self._get_client()
        try:
            response = await client.get(url)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise ProviderError(f"EDGAR request {url} failed: {e}") from e
        except ValueError as e:
            raise ProviderError(f"EDGAR returned invalid JSON for {url}: {e}") from e

    async def _fetch_cik_map(self) -> dict[str, str]:
        data = await self._get_json(TICKER_MAP_URL)
        return {
            str(entry["ticker"]).upper(): str(entry["cik_str"]).zfill(10)
            for entry in data.values()
            if entry.get("ticker") and entry.get("cik_str") is not None
        }

    async def cik_for(self, ticker: str) -> Optional[str]:
        cik_map = await self.cache.get_or_fetch(
            CacheKeys.EDGAR_CIK_MAP, self._fetch_cik_map, CacheTTL.EDGAR_CIK_MAP
        )
        return (cik_map or {}).get(ticker.upper())

    async def recent_filings(
        self,
        ticker: str,
        forms: Sequence[str] = DEFAULT_FORMS,
        limit: int = 20,
    ) -> list[Filing]:
        """
        Most recent filings of the given forms, newest first.

        Args:
            ticker: Ticker symbol
            forms: Form types to keep (e.g. 10-K, 8-K)
            limit: Maximum filings returned

        Returns:
            Filings; empty when the ticker has no CIK
        """
        cik = await self.cik_for(ticker)
        if cik is None:
            logger.warning(f"No EDGAR CIK for {ticker}")
            return []

        data = await self._get_json(SUBMISSIONS_URL.format(cik=cik))
        recent = (data.get("filings") or {}).get("recent") or {}
        accessions = recent.get("accessionNumber", [])
        form_types = recent.get("form", [])
        dates = recent.get("filingDate", [])
        documents = recent.get("primaryDocument", [])

        wanted = set(forms)
        filings: list[Filing] = []
        for accession, form, filed, document in zip(accessions, form_types, dates, documents):
            if form not in wanted:
                continue
            filings.append(
                Filing(
                    ticker=ticker.upper(),
                    accession_number=accession,
                    form_type=form,
                    filed_at=datetime.fromisoformat(filed).replace(tzinfo=timezone.utc),
                    url=ARCHIVE_URL.format(
                        cik=int(cik), accession=accession.replace("-", ""), document=document
                    ),
                )
            )
            if len(filings) >= limit:
                break
        logger.debug(f"Fetched {len(filings)} EDGAR filings for {ticker}")
        return filings
