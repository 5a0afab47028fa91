from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from bookmeta.internal.env_settings import CacheSettings
from bookmeta.internal.models import utcnow


class Freshness(str, Enum):
    fresh = "fresh"
    stale = "stale"


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def freshness(
    last_updated: datetime, threshold: timedelta, now: Optional[datetime] = None
) -> Freshness:
    """
    A record is stale once its age is strictly greater than `threshold`.
    A record exactly `threshold` old is still fresh.
    """
    now = _as_naive_utc(now if now is not None else utcnow())
    age = now - _as_naive_utc(last_updated)
    return Freshness.stale if age > threshold else Freshness.fresh


@dataclass(frozen=True)
class StalenessPolicy:
    search_threshold: timedelta = timedelta(days=7)
    record_threshold: timedelta = timedelta(hours=24)

    @classmethod
    def from_settings(cls, settings: CacheSettings) -> "StalenessPolicy":
        return cls(
            search_threshold=timedelta(days=settings.search_refresh_days),
            record_threshold=timedelta(hours=settings.record_refresh_hours),
        )

    def is_search_stale(self, last_updated: datetime, now: Optional[datetime] = None) -> bool:
        return freshness(last_updated, self.search_threshold, now) is Freshness.stale

    def is_record_stale(self, last_updated: datetime, now: Optional[datetime] = None) -> bool:
        return freshness(last_updated, self.record_threshold, now) is Freshness.stale
