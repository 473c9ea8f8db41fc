"""Alert validation engine.

Scores a candidate alert against the ticker's recent history and returns a
false-positive estimate plus a recommendation (alert / hold / dismiss).
The scoring itself is a pure function; the engine only gathers history.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence

from marketpulse import metrics
from marketpulse.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

# Spikes within this many percentage points count as "similar"
SIMILARITY_BAND = 10.0

BASE_FALSE_POSITIVE = 0.5
NO_HISTORY_FALSE_POSITIVE = 0.1
RECURRING_PENALTY = 0.3
VOLUME_ADJUSTMENT = 0.2
CORROBORATION_BONUS = 0.1
FREQUENCY_PENALTY = 0.2

ALERT_THRESHOLD = 0.75
DISMISS_THRESHOLD = 0.3
VALID_THRESHOLD = 0.5

CONTRADICTION_VALID_THRESHOLD = 0.75
CONTRADICTION_FALSE_POSITIVE_THRESHOLD = 0.4

SNAPSHOT_WINDOW = 5
CONTRADICTION_WINDOW = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CandidateAlert:
    """A detected anomaly awaiting validation."""

    ticker: str
    spike_percentage: float
    volume: float
    price_movement: float = 0.0
    observed_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class HistoricalSpike:
    spike_percentage: float
    observed_at: datetime
    volume: Optional[float] = None
    id: Optional[str] = None


@dataclass(frozen=True)
class ValidationResult:
    """Immutable outcome of scoring one candidate."""

    is_valid: bool
    confidence_score: float
    false_positive_probability: float
    reasons: tuple[str, ...]
    recommendation: str
    similarity_score: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["reasons"] = list(self.reasons)
        return data


@dataclass(frozen=True)
class DuplicateCheck:
    is_duplicate: bool
    matching: tuple[HistoricalSpike, ...] = ()


@dataclass(frozen=True)
class ContradictionVerdict:
    is_valid: bool
    validation_status: str  # valid | false_positive | needs_review


class SpikeHistorySource(ABC):
    """Read access to persisted spike history. Unknown tickers have no history."""

    @abstractmethod
    async def spikes_between(
        self, ticker: str, start: datetime, end: datetime
    ) -> list[HistoricalSpike]:
        """Spikes observed strictly between ``start`` and ``end``."""

    @abstractmethod
    async def volume_snapshots(self, ticker: str, limit: int) -> list[float]:
        """Most recent daily volumes, newest first."""

    @abstractmethod
    async def contradiction_statuses(self, ticker: str, limit: int) -> list[str]:
        """Validation statuses of the most recent narrative contradictions."""


def _clamp(value: float) -> float:
    return min(max(value, 0.0), 1.0)


def _similar(history: Sequence[HistoricalSpike], spike_percentage: float) -> list[HistoricalSpike]:
    return [
        spike for spike in history
        if abs(spike.spike_percentage - spike_percentage) < SIMILARITY_BAND
    ]


def score_candidate(
    candidate: CandidateAlert,
    history: Sequence[HistoricalSpike],
    snapshot_volumes: Sequence[float] = (),
    contradiction_statuses: Sequence[str] = (),
) -> ValidationResult:
    """
    Score a candidate alert against its history.

    Args:
        candidate: The anomaly being evaluated
        history: Spikes for the ticker over the history window
        snapshot_volumes: Up to five trailing daily volumes
        contradiction_statuses: Statuses of recent narrative contradictions

    Returns:
        ValidationResult with reasons in evaluation order
    """
    reasons: list[str] = []

    # Similarity
    similar = _similar(history, candidate.spike_percentage)
    if not similar:
        reasons.append("No similar spikes in last 30 days - novel pattern")
        similarity = 0.9
    elif len(similar) == 1:
        reasons.append("One similar spike detected in last 30 days")
        similarity = 0.6
    else:
        reasons.append(
            f"{len(similar)} similar spikes detected in last 30 days - possible recurring pattern"
        )
        similarity = 0.3

    spikes_per_week = len(history) / 4
    if spikes_per_week > 3:
        reasons.append("High spike frequency - volatility noise")
        similarity -= FREQUENCY_PENALTY

    # Volume context
    volume_context = "normal"
    volumes = list(snapshot_volumes)[:SNAPSHOT_WINDOW]
    if volumes:
        average = sum(volumes) / len(volumes)
        if average > 0:
            if candidate.volume > average * 3:
                reasons.append("Extreme volume spike - above 3x average")
                volume_context = "extreme"
            elif candidate.volume > average * 2:
                reasons.append("Strong volume increase - above 2x average")
                volume_context = "strong"
            elif candidate.volume < average * 0.5:
                reasons.append("Volume below average - low confidence")
                volume_context = "weak"

    # Corroboration
    corroborated = False
    if contradiction_statuses:
        valid_count = sum(1 for status in contradiction_statuses if status == "valid")
        if valid_count > 2:
            reasons.append(f"{valid_count} valid contradictions recently confirmed")
            corroborated = True
        else:
            reasons.append("Conflicting signals from recent contradictions")

    # Combine
    false_positive = BASE_FALSE_POSITIVE
    if len(similar) > 3:
        false_positive += RECURRING_PENALTY
        reasons.append("Pattern appears to be recurring/noise")

    if volume_context == "weak":
        false_positive += VOLUME_ADJUSTMENT
    elif volume_context == "extreme":
        false_positive -= VOLUME_ADJUSTMENT

    if corroborated:
        false_positive -= CORROBORATION_BONUS

    if not history:
        # First spike on record is treated as a genuine signal
        false_positive = NO_HISTORY_FALSE_POSITIVE

    false_positive = round(_clamp(false_positive), 4)
    similarity = round(_clamp(similarity), 4)
    confidence = round(1 - false_positive, 4)

    if confidence > ALERT_THRESHOLD:
        recommendation = "alert"
        reasons.append("High confidence signal - proceed with alert")
    elif confidence < DISMISS_THRESHOLD:
        recommendation = "dismiss"
        reasons.append("Low confidence - likely false positive")
    else:
        recommendation = "hold"
        reasons.append("Medium confidence - requires manual review")

    return ValidationResult(
        is_valid=confidence > VALID_THRESHOLD,
        confidence_score=confidence,
        false_positive_probability=false_positive,
        reasons=tuple(reasons),
        recommendation=recommendation,
        similarity_score=similarity,
    )


def validate_contradiction(confidence_score: float) -> ContradictionVerdict:
    """Classify a narrative contradiction by the model's confidence."""
    if confidence_score > CONTRADICTION_VALID_THRESHOLD:
        return ContradictionVerdict(True, "valid")
    if confidence_score < CONTRADICTION_FALSE_POSITIVE_THRESHOLD:
        return ContradictionVerdict(False, "false_positive")
    return ContradictionVerdict(True, "needs_review")


HISTORY_UNAVAILABLE = ValidationResult(
    is_valid=True,
    confidence_score=0.5,
    false_positive_probability=0.5,
    reasons=("Unable to fetch historical data - proceeding with caution",),
    recommendation="hold",
)

VALIDATION_ERROR = ValidationResult(
    is_valid=True,
    confidence_score=0.4,
    false_positive_probability=0.6,
    reasons=("Validation service error - manual review recommended",),
    recommendation="hold",
)


class AlertValidationEngine:
    """Gathers history for a candidate and scores it."""

    def __init__(self, history: SpikeHistorySource, config: Optional[Settings] = None):
        self.history = history
        self.config = config or default_settings

    async def _context(self, ticker: str) -> tuple[list[float], list[str]]:
        """Volume and contradiction context; a failed lookup means no context."""
        volumes, statuses = await asyncio.gather(
            self.history.volume_snapshots(ticker, SNAPSHOT_WINDOW),
            self.history.contradiction_statuses(ticker, CONTRADICTION_WINDOW),
            return_exceptions=True,
        )
        if isinstance(volumes, Exception):
            logger.warning(f"Volume snapshots unavailable for {ticker}: {volumes}")
            volumes = []
        if isinstance(statuses, Exception):
            logger.warning(f"Contradictions unavailable for {ticker}: {statuses}")
            statuses = []
        return volumes, statuses

    async def validate_alert(self, candidate: CandidateAlert) -> ValidationResult:
        """
        Validate a candidate alert.

        Never raises: history failures degrade to ``hold`` so infrastructure
        problems never silently dismiss an alert.
        """
        since = candidate.observed_at - timedelta(days=self.config.validation_history_days)
        try:
            history = await self.history.spikes_between(
                candidate.ticker, since, candidate.observed_at
            )
        except Exception as e:
            logger.error(f"Failed to fetch spike history for {candidate.ticker}: {e}")
            metrics.record_validation(HISTORY_UNAVAILABLE.recommendation)
            return HISTORY_UNAVAILABLE

        try:
            volumes, statuses = await self._context(candidate.ticker)
            result = score_candidate(candidate, history, volumes, statuses)
        except Exception as e:
            logger.exception(f"Alert validation error for {candidate.ticker}: {e}")
            result = VALIDATION_ERROR

        metrics.record_validation(result.recommendation)
        logger.info(
            f"Validated {candidate.ticker} spike {candidate.spike_percentage:.1f}%: "
            f"{result.recommendation} (confidence {result.confidence_score:.2f})"
        )
        return result

    async def check_duplicate(
        self,
        candidate: CandidateAlert,
        lookback_hours: Optional[int] = None,
    ) -> DuplicateCheck:
        """
        Check whether a similar alert fired within the lookback window.

        Failures count as "not a duplicate" so a real alert is never suppressed
        by a lookup error.
        """
        hours = lookback_hours or self.config.duplicate_lookback_hours
        start = candidate.observed_at - timedelta(hours=hours)
        try:
            recent = await self.history.spikes_between(
                candidate.ticker, start, candidate.observed_at
            )
        except Exception as e:
            logger.error(f"Duplicate check failed for {candidate.ticker}: {e}")
            return DuplicateCheck(False)

        matching = tuple(_similar(recent, candidate.spike_percentage))
        return DuplicateCheck(bool(matching), matching)
