"""
Retry policy shared by the job queue adapters.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class QueuePolicy:
    """Per-queue retry and lease settings"""
    name: str
    max_attempts: int
    backoff_base_sec: float
    backoff_max_sec: float
    lease_seconds: int
    default_priority: int = 1

    def backoff_for(self, attempt: int) -> float:
        return compute_backoff(attempt, self.backoff_base_sec, self.backoff_max_sec)


def compute_backoff(attempt: int, base_sec: float, max_sec: float) -> float:
    """
    Delay before the retry that follows a failed attempt.

    delay = base * 2^(attempt - 1), capped at max_sec. Attempts are 1-based.
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    # 2**62 still converts to float
    exponent = min(attempt - 1, 62)
    return min(base_sec * (2 ** exponent), max_sec)
