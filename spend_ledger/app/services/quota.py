from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Callable, Optional, Tuple
from uuid import UUID

from ..core.config import QuotaPolicy
from ..models import QuotaWindow
from .cache import CacheBackend
from .repository import LedgerRepository


logger = logging.getLogger(__name__)

DAILY = "daily"
MONTHLY = "monthly"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class QuotaCounter:
    """Cached count of successful sends per account for the current day and month.

    Counts come from the usage log; the cache only shortens the path. A charge
    must call ``invalidate`` so the next admission check sees the new count.
    """

    def __init__(
        self,
        repository: LedgerRepository,
        cache: CacheBackend,
        policy: Optional[QuotaPolicy] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.repository = repository
        self.cache = cache
        self.policy = policy or QuotaPolicy()
        self.clock = clock

    def _window(self, period: str, now: datetime) -> Tuple[str, datetime, datetime]:
        if period == DAILY:
            start = now.replace(hour=0, minute=0, second=0, microsecond=0)
            return now.strftime("%Y-%m-%d"), start, start + timedelta(days=1)
        if period == MONTHLY:
            start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
            if start.month == 12:
                end = start.replace(year=start.year + 1, month=1)
            else:
                end = start.replace(month=start.month + 1)
            return now.strftime("%Y-%m"), start, end
        raise ValueError(f"Unknown quota period: {period}")

    def cache_key(self, period: str, account_id: UUID, now: Optional[datetime] = None) -> str:
        stamp, _, _ = self._window(period, now or self.clock())
        return f"usage:{period}:{account_id}:{stamp}"

    def _usage(self, period: str, account_id: UUID) -> int:
        now = self.clock()
        stamp, start, end = self._window(period, now)
        key = f"usage:{period}:{account_id}:{stamp}"

        cached = self.cache.get(key)
        if cached is not None:
            return int(cached)

        count = self.repository.count_usage(account_id, start, end)
        self.cache.set(key, count, self.policy.cache_ttl_seconds)
        return count

    def daily_usage(self, account_id: UUID) -> int:
        return self._usage(DAILY, account_id)

    def monthly_usage(self, account_id: UUID) -> int:
        return self._usage(MONTHLY, account_id)

    def invalidate(self, account_id: UUID) -> None:
        now = self.clock()
        self.cache.delete(
            self.cache_key(DAILY, account_id, now),
            self.cache_key(MONTHLY, account_id, now),
        )
        logger.debug("quota.invalidated", extra={"account_id": str(account_id)})

    def percentage(self, used: int, limit: int) -> float:
        if limit == 0:
            return 0.0
        return round(used / limit * 100, 1)

    def warning_level(self, used: int, limit: int) -> str:
        if limit == 0:
            return "none"
        ratio = used / limit
        if ratio >= self.policy.danger_threshold:
            return "danger"
        if ratio >= self.policy.warning_threshold:
            return "warning"
        return "none"

    def check_window(
        self,
        account_id: UUID,
        period: str,
        limit: int,
        requested: int = 0,
    ) -> QuotaWindow:
        if limit == 0:
            return QuotaWindow(period=period, limit=0, unlimited=True, requested=requested)

        used = self._usage(period, account_id)
        remaining = max(0, limit - used)
        return QuotaWindow(
            period=period,
            allowed=remaining >= requested,
            limit=limit,
            used=used,
            remaining=remaining,
            requested=requested,
            percentage=self.percentage(used, limit),
            warning_level=self.warning_level(used, limit),
        )
