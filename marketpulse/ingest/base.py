"""Provider and store interfaces consumed by the ingestion handlers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional, Sequence

from marketpulse.detect.validation import ValidationResult
from marketpulse.detect.volume import VolumeSpike

MATERIAL_FORMS = frozenset({"10-K", "10-Q", "8-K", "DEF 14A"})


@dataclass
class Quote:
    """Latest quote for a ticker."""

    ticker: str
    price: float
    change_percent: float
    volume: Optional[float]
    high: Optional[float] = None
    low: Optional[float] = None
    open: Optional[float] = None
    previous_close: Optional[float] = None
    timestamp: Optional[datetime] = None


@dataclass
class NewsArticle:
    external_id: str
    ticker: str
    headline: str
    source: str
    url: str
    published_at: datetime
    summary: str = ""
    sentiment: Optional[float] = None


@dataclass
class Filing:
    ticker: str
    accession_number: str
    form_type: str
    filed_at: datetime
    url: str

    @property
    def is_material(self) -> bool:
        return self.form_type in MATERIAL_FORMS


@dataclass
class StoredSpike:
    """A persisted volume spike."""

    id: str
    ticker: str
    spike_percentage: float
    volume: float
    price_movement: float
    observed_at: datetime


@dataclass
class AnalysisOutcome:
    """Result returned by an AI analysis provider."""

    summary: str
    confidence_score: float
    details: dict[str, Any] = field(default_factory=dict)


class MarketDataProvider(ABC):
    @abstractmethod
    async def get_quote(self, ticker: str) -> Optional[Quote]:
        """
        Fetch the latest quote.

        Returns:
            Quote, or None if the provider has no data for the ticker

        Raises:
            ProviderError: If the request fails (retried by the queue)
        """


class NewsProvider(ABC):
    @abstractmethod
    async def company_news(self, ticker: str, start: date, end: date) -> list[NewsArticle]:
        """Articles about ``ticker`` published between ``start`` and ``end``."""


class FilingProvider(ABC):
    @abstractmethod
    async def recent_filings(self, ticker: str, forms: Sequence[str]) -> list[Filing]:
        """Most recent filings of the given form types."""


class AnalysisProvider(ABC):
    """AI-backed analysis of spikes and narrative contradictions."""

    @abstractmethod
    async def analyze_spike(self, spike: StoredSpike) -> AnalysisOutcome:
        pass

    @abstractmethod
    async def assess_contradiction(self, ticker: str, contradiction: dict[str, Any]) -> AnalysisOutcome:
        pass


class IngestionStore(ABC):
    """Persistence used by ingestion and analysis handlers."""

    @abstractmethod
    async def active_tickers(self) -> list[str]:
        """Symbols that at least one user watches."""

    @abstractmethod
    async def record_snapshot(
        self,
        symbol: str,
        snapshot_date: date,
        volume: float,
        close_price: Optional[float] = None,
    ) -> None:
        """Insert or replace the daily volume snapshot."""

    @abstractmethod
    async def average_volume(self, ticker: str, days: int, before: Optional[date] = None) -> float:
        """Average daily volume over the ``days`` before ``before`` (0 when unknown)."""

    @abstractmethod
    async def find_spike(self, ticker: str, observed_at: datetime) -> Optional[str]:
        """Id of the spike already stored for this observation, if any."""

    @abstractmethod
    async def record_spike(self, spike: VolumeSpike, observed_at: datetime) -> str:
        """Persist a detected spike and return its id (the existing id for a repeat)."""

    @abstractmethod
    async def get_spike(self, spike_id: str) -> Optional[StoredSpike]:
        pass

    @abstractmethod
    async def save_news(self, articles: Sequence[NewsArticle]) -> int:
        """Store articles idempotently; returns how many were new."""

    @abstractmethod
    async def unsaved_filings(self, filings: Sequence[Filing]) -> list[Filing]:
        """The filings not stored yet."""

    @abstractmethod
    async def save_filings(self, filings: Sequence[Filing]) -> list[Filing]:
        """Store filings idempotently (keyed on accession number); returns the new ones."""

    @abstractmethod
    async def record_validation(
        self, ticker: str, spike_id: Optional[str], result: ValidationResult
    ) -> None:
        pass

    @abstractmethod
    async def get_contradiction(self, contradiction_id: str) -> Optional[dict[str, Any]]:
        pass

    @abstractmethod
    async def update_contradiction(
        self, contradiction_id: str, confidence_score: float, validation_status: str
    ) -> None:
        pass

    @abstractmethod
    async def record_spike_analysis(self, spike_id: str, outcome: AnalysisOutcome) -> None:
        pass
