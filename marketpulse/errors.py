"""Exception hierarchy for MarketPulse."""


class MarketPulseError(Exception):
    """Base class for all application errors."""


class ConfigurationError(MarketPulseError):
    """Required configuration is missing or invalid (fatal at startup)."""


class JobPayloadError(MarketPulseError):
    """A job payload failed schema validation or targets the wrong queue."""


class JobNotFoundError(MarketPulseError):
    """No job exists with the requested id."""

    def __init__(self, queue_name: str, job_id: str):
        super().__init__(f"Job {job_id} not found in queue {queue_name}")
        self.queue_name = queue_name
        self.job_id = job_id


class JobStateError(MarketPulseError):
    """The requested operation is illegal for the job's current status."""


class UnknownJobTypeError(MarketPulseError):
    """No handler is registered for a job's (queue, type) pair."""


class ProviderError(MarketPulseError):
    """An external data provider request failed."""


class RateLimitExceededError(ProviderError):
    """The local fixed-window limit for a provider was exhausted."""

    def __init__(self, key: str):
        super().__init__(f"Rate limit exceeded for {key}")
        self.key = key


class DeliveryError(MarketPulseError):
    """Delivery of an alert failed for one or more recipients."""

    def __init__(self, ticker: str, failed_users: list[str]):
        super().__init__(
            f"Alert delivery for {ticker} failed for {len(failed_users)} user(s): "
            f"{', '.join(failed_users)}"
        )
        self.ticker = ticker
        self.failed_users = failed_users
