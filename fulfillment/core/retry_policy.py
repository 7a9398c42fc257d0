from datetime import datetime, timedelta

from pydantic import BaseModel


class RetryPolicy(BaseModel):
    max_retries: int = 5
    backoff_base_seconds: float = 30.0
    backoff_factor: float = 2.0
    backoff_cap_seconds: float = 3600.0

    def backoff(self, retry_count: int) -> timedelta:
        """Delay before attempt ``retry_count + 1``; non-decreasing and capped."""
        exponent = max(retry_count - 1, 0)
        seconds = self.backoff_base_seconds * self.backoff_factor**exponent
        return timedelta(seconds=min(seconds, self.backoff_cap_seconds))

    def next_retry_at(self, retry_count: int, now: datetime) -> datetime:
        return now + self.backoff(retry_count)

    def is_exhausted(self, retry_count: int) -> bool:
        return retry_count >= self.max_retries
