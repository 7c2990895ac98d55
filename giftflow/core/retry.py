# giftflow/core/retry.py
from __future__ import annotations

from dataclasses import dataclass

from giftflow.core.config import AppSettings


@dataclass(frozen=True)
class RetryPolicy:
    """
    指数退避：delay = min(initial * multiplier ** attempt, max_delay)

    attempt 从 0 开始；max_retries 为“重试”次数（首次尝试不计入）。
    """

    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    max_retries: int = 5

    def delay_for(self, attempt: int) -> float:
        if attempt < 0:
            raise ValueError("attempt must be >= 0")
        return min(self.initial_delay * (self.multiplier**attempt), self.max_delay)

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_retries

    @classmethod
    def realtime(cls, settings: AppSettings) -> "RetryPolicy":
        return cls(
            initial_delay=settings.REALTIME_INITIAL_DELAY_SECONDS,
            multiplier=settings.REALTIME_BACKOFF_MULTIPLIER,
            max_delay=settings.REALTIME_MAX_DELAY_SECONDS,
            max_retries=settings.REALTIME_MAX_RETRIES,
        )

    @classmethod
    def settlement(cls, settings: AppSettings) -> "RetryPolicy":
        # 与推送重连共用同一退避曲线，只是尝试次数不同
        return cls(
            initial_delay=settings.REALTIME_INITIAL_DELAY_SECONDS,
            multiplier=settings.REALTIME_BACKOFF_MULTIPLIER,
            max_delay=settings.REALTIME_MAX_DELAY_SECONDS,
            max_retries=max(settings.SETTLEMENT_TRANSFER_ATTEMPTS - 1, 0),
        )
