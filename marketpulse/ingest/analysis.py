"""OpenAI-backed analysis of volume spikes and narrative contradictions."""

import json
import logging
from typing import Any, Optional

from openai import AsyncOpenAI, OpenAIError

from marketpulse.config import Settings, settings as default_settings
from marketpulse.errors import ConfigurationError, ProviderError
from marketpulse.ingest.base import AnalysisOutcome, AnalysisProvider, StoredSpike

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a market surveillance analyst. Answer only with a JSON object "
    "containing 'summary' (string), 'confidence_score' (number between 0 and 1) "
    "and 'details' (object)."
)

SPIKE_PROMPT = """Assess this trading volume spike.
Ticker: {ticker}
Observed at: {observed_at}
Volume: {volume:.0f}
Spike over average: {spike_percentage:.1f}%
Price movement: {price_movement:.2f}%

Explain the most likely causes and how confident you are that it reflects
genuine news-driven activity rather than noise."""

CONTRADICTION_PROMPT = """Assess whether this narrative contradiction is real.
Ticker: {ticker}
Contradiction: {contradiction}

Return a confidence_score for the contradiction being a genuine divergence
between the company's narrative and market behaviour."""


class OpenAIAnalysisProvider(AnalysisProvider):
    """Chat-completions client returning structured JSON analyses."""

    def __init__(self, config: Optional[Settings] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or default_settings
        self._client = client

    async def _get_client(self) -> AsyncOpenAI:
        """Get or create OpenAI client."""
        if self._client is None:
            if not self.config.openai_api_key:
                raise ConfigurationError("OpenAI API key not configured")
            self._client = AsyncOpenAI(api_key=self.config.openai_api_key)
        return self._client

    async def close(self):
        if self._client:
            await self._client.close()
            self._client = None

    async def _complete(self, prompt: str) -> AnalysisOutcome:
        client = await self._get_client()
        try:
            response = await client.chat.completions.create(
                model=self.config.llm_model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=self.config.llm_temperature,
                max_tokens=self.config.llm_max_tokens,
                timeout=self.config.llm_timeout_seconds,
                response_format={"type": "json_object"},
            )
        except OpenAIError as e:
            raise ProviderError(f"LLM call failed: {e}") from e

        content = response.choices[0].message.content or ""
        return parse_outcome(content)

    async def analyze_spike(self, spike: StoredSpike) -> AnalysisOutcome:
        prompt = SPIKE_PROMPT.format(
            ticker=spike.ticker,
            observed_at=spike.observed_at.isoformat(),
            volume=spike.volume,
            spike_percentage=spike.spike_percentage,
            price_movement=spike.price_movement,
        )
        return await self._complete(prompt)

    async def assess_contradiction(self, ticker: str, contradiction: dict[str, Any]) -> AnalysisOutcome:
        prompt = CONTRADICTION_PROMPT.format(
            ticker=ticker,
            contradiction=json.dumps(contradiction, default=str),
        )
        return await self._complete(prompt)


def parse_outcome(content: str) -> AnalysisOutcome:
    """
    Parse a model response into an AnalysisOutcome.

    Raises:
        ProviderError: If the response is not the expected JSON object
    """
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ProviderError(f"LLM returned invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProviderError("LLM response is not a JSON object")

    try:
        confidence = float(data.get("confidence_score", 0.0))
    except (TypeError, ValueError):
        confidence = 0.0
    details = data.get("details")
    return AnalysisOutcome(
        summary=str(data.get("summary", "")),
        confidence_score=min(max(confidence, 0.0), 1.0),
        details=details if isinstance(details, dict) else {},
    )
