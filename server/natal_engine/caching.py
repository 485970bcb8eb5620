"""
Fingerprint-keyed chart cache.

Charts are stored one record per birth input under "chart:{fingerprint}".
Age is tracked per record; staleness is reported to callers but never
enforced on reads, and old records are removed only by explicit eviction.
"""

import json
import hashlib
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from .ephemeris.compute import house_rulers
from .errors import CachePersistFailure, StorageError
from .images import ChartImageStore
from .models import BirthInput, CachedChartRecord, ChartVisualization, NatalChart
from .obs.logging import StructuredLogger
from .obs.metrics import metrics
from .storage import RecordStore

logger = logging.getLogger(__name__)
business_logger = StructuredLogger(__name__)

CHART_KEY_PREFIX = "chart:"
DEFAULT_MAX_AGE = timedelta(days=30)

# 1e-4 degrees is roughly 11 m on the ground
COORDINATE_QUANTUM = 1e4


def normalize_request(obj: Any) -> str:
    """
    Create stable JSON representation for hashing.

    Args:
        obj: Object to normalize (typically a dict or list)

    Returns:
        Stable JSON string with sorted keys
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def fingerprint(birth_input: BirthInput) -> str:
    """
    Cache identity of a birth input.

    Two inputs share a fingerprint when name, date, time (to the second),
    timezone and coordinates (to 1e-4 degrees) match and the location text
    matches ignoring case and surrounding whitespace.

    Returns:
        64-character SHA-256 hex digest
    """
    coordinates = None
    if birth_input.coordinates is not None:
        coordinates = [
            int(round(birth_input.coordinates.latitude * COORDINATE_QUANTUM)),
            int(round(birth_input.coordinates.longitude * COORDINATE_QUANTUM)),
        ]

    key_data = {
        "name": birth_input.name,
        "date": birth_input.birth_date.isoformat(),
        "time": birth_input.birth_time.strftime("%H:%M:%S"),
        "location": birth_input.location.strip().lower(),
        "timezone": birth_input.timezone,
        "coordinates": coordinates,
    }
    return hashlib.sha256(normalize_request(key_data).encode()).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=timezone.utc)


class ChartCache:
    """
    Chart cache over a durable record store.

    Args:
        store: Record store the charts live in
        max_age: Age after which a record is reported stale
        clock: Source of "now" for generated_at and staleness
        image_store: Where chart wheel images live; images of replaced and
            evicted records are deleted from it
    """

    def __init__(self, store: RecordStore, max_age: timedelta = DEFAULT_MAX_AGE,
                 clock: Callable[[], datetime] = _utcnow,
                 image_store: Optional[ChartImageStore] = None):
        self.store = store
        self.max_age = max_age
        self.clock = clock
        self.image_store = image_store
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._saves = 0
        self._evictions = 0

    @staticmethod
    def _key(fp: str) -> str:
        return f"{CHART_KEY_PREFIX}{fp}"

    def _stored_visualization(self, fp: str) -> Optional[ChartVisualization]:
        try:
            raw = self.store.get(self._key(fp))
        except StorageError as e:
            logger.warning(f"Could not read previous record for {fp[:16]}: {e}")
            return None
        record = self._decode(fp, raw) if raw is not None else None
        return record.chart.visualization if record is not None else None

    def _delete_image(self, visualization: Optional[ChartVisualization]) -> None:
        if self.image_store is None or visualization is None:
            return
        try:
            self.image_store.delete(visualization.file_id, visualization.format)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to delete chart image {visualization.file_id}: {e}")

    def save(self, chart: NatalChart, birth_input: BirthInput) -> CachedChartRecord:
        """
        Store a chart for a birth input, replacing any previous record.

        Raises:
            CachePersistFailure: If the record could not be written
        """
        fp = fingerprint(birth_input)
        record = CachedChartRecord(
            fingerprint=fp,
            birth_input=birth_input,
            chart=chart,
            generated_at=self.clock(),
        )

        with self._lock:
            previous = self._stored_visualization(fp) if self.image_store is not None else None
            try:
                self.store.put(self._key(fp), record.model_dump_json())
            except Exception as e:
                business_logger.cache_operation("persist_failed", fp)
                metrics.record_cache_operation("persist_failed")
                raise CachePersistFailure(e)
            self._saves += 1

        if previous is not None and previous != chart.visualization:
            self._delete_image(previous)

        business_logger.cache_operation("save", fp)
        metrics.record_cache_operation("save")
        return record

    def _decode(self, key: str, raw: str) -> Optional[CachedChartRecord]:
        try:
            return CachedChartRecord.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring undecodable cache record {key}: {e.error_count()} validation errors")
            business_logger.cache_operation("decode_failed", key)
            metrics.record_cache_operation("decode_failed")
            return None

    def find_record(self, birth_input: BirthInput) -> Optional[CachedChartRecord]:
        fp = fingerprint(birth_input)
        raw = self.store.get(self._key(fp))
        record = self._decode(fp, raw) if raw is not None else None

        if record is None:
            self._misses += 1
            business_logger.cache_operation("miss", fp)
            metrics.record_cache_operation("miss")
            return None

        self._hits += 1
        business_logger.cache_operation("hit", fp)
        metrics.record_cache_operation("hit")
        return record

    def find(self, birth_input: BirthInput) -> Optional[NatalChart]:
        """
        Cached chart for a birth input, or None.

        House rulers are derived again from the stored houses and bodies, so
        a record written before a rulership change still loads consistently.
        """
        record = self.find_record(birth_input)
        if record is None:
            return None

        chart = record.chart
        rulers = house_rulers(chart.houses, chart.bodies) if chart.houses else []
        return chart.model_copy(update={"house_rulers": rulers})

    def records(self) -> List[CachedChartRecord]:
        """All decodable records in the store."""
        found = []
        for key, raw in self.store.scan(CHART_KEY_PREFIX):
            record = self._decode(key, raw)
            if record is not None:
                found.append(record)
        metrics.record_cache_operation("scan", cache_size=len(found))
        return found

    def is_stale(self, record: CachedChartRecord, reference_time: Optional[datetime] = None,
                 max_age: Optional[timedelta] = None) -> bool:
        reference_time = _aware(reference_time or self.clock())
        max_age = self.max_age if max_age is None else max_age
        return reference_time - _aware(record.generated_at) > max_age

    def status(self, birth_input: BirthInput, reference_time: Optional[datetime] = None) -> Dict[str, Any]:
        """Advisory cache state for a birth input: cached, generated_at, stale."""
        record = self.find_record(birth_input)
        if record is None:
            return {"cached": False, "generated_at": None, "stale": False}
        return {
            "cached": True,
            "generated_at": record.generated_at,
            "stale": self.is_stale(record, reference_time),
        }

    def evict_older_than(self, days: float, reference_time: Optional[datetime] = None) -> int:
        """
        Delete records older than `days`.

        Args:
            days: Age threshold in days
            reference_time: "Now" for the age computation

        Returns:
            Number of records deleted
        """
        reference_time = _aware(reference_time or self.clock())
        threshold = timedelta(days=days)

        expired = [
            r for r in self.records()
            if reference_time - _aware(r.generated_at) > threshold
        ]
        if not expired:
            return 0

        with self._lock:
            self.store.delete(*(self._key(r.fingerprint) for r in expired))
            self._evictions += len(expired)

        for record in expired:
            self._delete_image(record.chart.visualization)

        logger.info(f"Evicted {len(expired)} cached charts older than {days:g} days")
        business_logger.cache_operation("evict", "*", count=len(expired))
        metrics.record_cache_operation("evict")
        return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        total_requests = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate_percent": (self._hits / max(1, total_requests)) * 100,
            "saves": self._saves,
            "evictions": self._evictions,
            "max_age_days": self.max_age.total_seconds() / 86400,
        }
