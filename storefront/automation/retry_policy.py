from dataclasses import dataclass
from datetime import timedelta


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for recoverable automation failures."""

    max_attempts: int = 3
    base_delay_seconds: int = 60
    max_delay_seconds: int = 960

    @classmethod
    def from_config(cls, config):
        return cls(
            max_attempts=config.get("AUTOMATION_MAX_ATTEMPTS", cls.max_attempts),
            base_delay_seconds=config.get("AUTOMATION_RETRY_BASE_SECONDS", cls.base_delay_seconds),
            max_delay_seconds=config.get("AUTOMATION_RETRY_MAX_SECONDS", cls.max_delay_seconds),
        )

    def backoff(self, attempt: int) -> timedelta:
        """Delay before the retry that follows failed attempt number ``attempt`` (1-based)."""
        exponent = max(attempt, 1) - 1
        return timedelta(seconds=min(self.base_delay_seconds * (2 ** exponent), self.max_delay_seconds))

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts
