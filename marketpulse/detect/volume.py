"""Volume spike detector.

Compares a quote's volume with the ticker's trailing average daily volume
and grades the deviation into a severity.
"""

from dataclasses import dataclass
from typing import Optional

from marketpulse.config import settings


@dataclass
class VolumeSpike:
    """A detected volume anomaly."""
    ticker: str
    volume: float
    average_volume: float
    ratio: float  # current / average
    spike_percentage: float
    price_movement: float
    severity: str


def severity_for_ratio(ratio: float) -> str:
    if ratio >= 4:
        return "critical"
    if ratio >= 3:
        return "high"
    if ratio >= 2:
        return "medium"
    return "low"


class VolumeSpikeDetector:
    """Flags volumes above ``threshold`` times the trailing average."""

    def __init__(self, threshold: Optional[float] = None):
        self.threshold = threshold if threshold is not None else settings.volume_spike_threshold

    def detect(
        self,
        ticker: str,
        volume: float,
        average_volume: float,
        price_movement: float = 0.0,
    ) -> Optional[VolumeSpike]:
        """
        Evaluate one observation.

        Args:
            ticker: Ticker symbol
            volume: Current volume
            average_volume: Trailing average volume (0 means no baseline)
            price_movement: Percent price change reported with the quote

        Returns:
            VolumeSpike if the ratio exceeds the threshold, else None
        """
        if average_volume <= 0 or volume <= 0:
            return None

        ratio = volume / average_volume
        if ratio <= self.threshold:
            return None

        return VolumeSpike(
            ticker=ticker,
            volume=volume,
            average_volume=average_volume,
            ratio=round(ratio, 4),
            spike_percentage=round((ratio - 1) * 100, 2),
            price_movement=price_movement,
            severity=severity_for_ratio(ratio),
        )
