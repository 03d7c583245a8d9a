"""
Consistency check and compensation for Vector Sync Orchestrator

Compares a job's source table with its target collection without writing to
the target, and re-writes records found missing through the sync engine's
idempotent single-record path.
"""

import math
import random
import time
from collections import defaultdict
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Awaitable, Dict, List, Optional

from ..adapters.base import SourceAdapter, VectorStoreAdapter, Record, key_expr, keys_expr
from ..adapters.sql import SqlBuilder
from ..core.config import ConsistencySettings
from ..core.exceptions import ConsistencyError
from ..models.job import SyncJob
from ..models.execution import SyncStage
from ..models.consistency import (
    ConsistencyCheckResult,
    CompensationOutcome,
    DiscrepancyType,
    format_discrepancy
)
from ..utils.logger import get_logger, set_log_context
from ..utils.metrics import SyncMetrics
from .fault_tolerance import call_with_timeout
from .sync_engine import BatchSyncEngine

_NON_SCALAR = (list, tuple, dict, set, frozenset, bytes, bytearray)
_KEY_CHUNK = 500


def _key(value: Any) -> str:
    return str(value)


def _normalize(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def values_equal(source_value: Any, target_value: Any) -> bool:
    """Compare a source column with the stored field, tolerating type drift."""
    a, b = _normalize(source_value), _normalize(target_value)
    if isinstance(a, float) or isinstance(b, float):
        try:
            return math.isclose(float(a), float(b), rel_tol=1e-9, abs_tol=1e-9)
        except (TypeError, ValueError):
            return False
    if type(a) is not type(b) and a is not None and b is not None:
        return str(a) == str(b)
    return a == b


class ConsistencyService:
    """
    Source versus target verification and repair.

    ``check`` issues only reads against the vector store. ``compensate`` is
    the only write path and goes through ``BatchSyncEngine.write_record``.
    """

    def __init__(
        self,
        source_adapter: SourceAdapter,
        vector_store: VectorStoreAdapter,
        sync_engine: BatchSyncEngine,
        settings: Optional[ConsistencySettings] = None,
        vector_field: str = "vector",
        metrics: Optional[SyncMetrics] = None,
        rng: Optional[random.Random] = None
    ):
        self.source_adapter = source_adapter
        self.vector_store = vector_store
        self.sync_engine = sync_engine
        self.settings = settings or ConsistencySettings()
        self.vector_field = vector_field
        self.metrics = metrics
        self.rng = rng or random.Random()

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="consistency_service")

    def quick_check(self, source_count: int, target_count: int) -> bool:
        """Count-only verdict."""
        return source_count == target_count

    async def check(self, job: SyncJob) -> ConsistencyCheckResult:
        """
        Compare counts and a sample of records between source and target.

        Never raises: an adapter failure yields ``consistent=False`` with an
        error message.

        Args:
            job: Job whose source and collection are compared

        Returns:
            ConsistencyCheckResult with counts, sample results and discrepancies
        """
        started = time.perf_counter()
        result = ConsistencyCheckResult(job_id=job.job_id)

        try:
            await self._run_check(job, result)
            result.consistent = not result.discrepancies
        except Exception as e:
            result.consistent = False
            result.error_message = f"Check failed: {e}"
            self.logger.error("Consistency check failed", extra={"job_id": job.job_id}, exc_info=True)

        result.duration_seconds = time.perf_counter() - started
        if self.metrics:
            label = "error" if result.error_message else ("consistent" if result.consistent else "inconsistent")
            self.metrics.consistency_checks.labels(result=label).inc()

        self.logger.info("Consistency check finished", extra={
            "job_id": job.job_id,
            "consistent": result.consistent,
            "source_count": result.source_count,
            "target_count": result.target_count,
            "sample_passed": result.sample_check_passed,
            "sample_total": result.sample_check_total,
            "discrepancies": len(result.discrepancies)
        })
        return result

    async def _timed(self, awaitable: Awaitable, operation: str) -> Any:
        return await call_with_timeout(awaitable, self.settings.lookup_timeout_seconds, operation)

    async def _run_check(self, job: SyncJob, result: ConsistencyCheckResult):
        builder = SqlBuilder(job.source)
        pk = job.source.primary_key
        collection = job.target_collection

        # Count check
        sql, params = builder.count()
        result.source_count = await self._timed(self.source_adapter.count(job.source, sql, params), "source_count")
        collection_exists = await self._timed(self.vector_store.has_collection(collection), "has_collection")
        if collection_exists:
            stats = await self._timed(self.vector_store.get_stats(collection), "target_stats")
            result.target_count = stats.row_count

        # Sample check over a window of source rows in key order
        sample_size = self.settings.sample_size
        sql, params = builder.sample(sample_size, self._window_offset(result.source_count))
        sample = await self._timed(self.source_adapter.query(job.source, sql, params), "source_sample")
        result.sample_check_total = len(sample)
        sample_keys = [record.get(pk) for record in sample]
        if any(key is None for key in sample_keys):
            raise ConsistencyError(job.job_id, f"source rows without primary key {pk}")

        targets: Dict[str, List[Record]] = {}
        if collection_exists and sample_keys:
            targets = await self._lookup_targets(collection, pk, sample_keys)

        passed = 0
        duplicates = 0
        for record in sample:
            key = record[pk]
            matches = targets.get(_key(key))
            if not matches:
                result.missing_ids.append(key)
                result.add(DiscrepancyType.MISSING_IN_TARGET, f"id={key}")
                continue
            if len(matches) > 1:
                duplicates += len(matches) - 1
                result.add(DiscrepancyType.DUPLICATE_IN_TARGET, f"id={key} rows={len(matches)}")
            mismatched = self.mismatched_fields(record, matches[0])
            for name in mismatched:
                result.add(DiscrepancyType.FIELD_MISMATCH, f"id={key} field={name}")
            if not mismatched and len(matches) == 1:
                passed += 1
        result.sample_check_passed = passed

        # Reverse pass: target rows unknown to the source sample are verified against the source
        extra: List[Any] = []
        if collection_exists:
            target_sample = await self._timed(
                self.vector_store.query(
                    collection, "", fields=[pk], limit=sample_size,
                    offset=self._window_offset(result.target_count)
                ),
                "target_sample"
            )
            sampled = {_key(key) for key in sample_keys}
            unknown = list(dict.fromkeys(
                row.get(pk) for row in target_sample if _key(row.get(pk)) not in sampled
            ))
            if unknown:
                sql, params = builder.select_by_keys(unknown)
                rows = await self._timed(self.source_adapter.query(job.source, sql, params), "source_lookup")
                present = {_key(row.get(pk)) for row in rows}
                extra = [key for key in unknown if _key(key) not in present]
                for key in extra:
                    result.add(DiscrepancyType.EXTRA_IN_TARGET, f"id={key}")

        # Report a count gap only when the sampled differences do not account for it
        if result.source_count != result.target_count:
            explained = len(result.missing_ids) - len(extra) - duplicates
            if result.count_gap != explained:
                result.discrepancies.insert(0, format_discrepancy(
                    DiscrepancyType.COUNT_MISMATCH,
                    f"source={result.source_count} target={result.target_count}"
                ))

    def _window_offset(self, total: int) -> int:
        """Start of the next sample window; 0 unless randomized and the table is larger than a window."""
        span = total - self.settings.sample_size
        if not self.settings.randomize_sample or span <= 0:
            return 0
        return self.rng.randint(0, span)

    async def _lookup_targets(
        self,
        collection: str,
        pk: str,
        keys: List[Any],
        fields: Optional[List[str]] = None
    ) -> Dict[str, List[Record]]:
        """Target rows for ``keys`` grouped by key, keeping every copy of a duplicated key."""
        limit = 2 * len(keys)
        rows = await self._timed(
            self.vector_store.query(collection, keys_expr(pk, keys), fields=fields, limit=limit),
            "target_lookup"
        )
        if len(rows) >= limit:
            # the page filled up, so some keys may not have been reached
            rows = []
            for key in keys:
                rows.extend(await self._timed(
                    self.vector_store.query(collection, key_expr(pk, key), fields=fields, limit=limit),
                    "target_lookup"
                ))
        grouped: Dict[str, List[Record]] = defaultdict(list)
        for row in rows:
            grouped[_key(row.get(pk))].append(row)
        return grouped

    def mismatched_fields(self, source: Record, target: Record) -> List[str]:
        """Names of scalar source fields whose target value differs; the vector field is ignored."""
        mismatched = []
        for name, value in source.items():
            if name == self.vector_field or isinstance(value, _NON_SCALAR):
                continue
            if name not in target:
                if value is not None:
                    mismatched.append(name)
                continue
            if not values_equal(value, target[name]):
                mismatched.append(name)
        return mismatched

    async def find_missing_keys(self, job: SyncJob, limit: Optional[int] = None) -> List[Any]:
        """
        Scan source primary keys page by page and return those absent from the target.

        Args:
            job: Job to scan
            limit: Stop after this many missing keys

        Returns:
            Missing primary keys in source key order
        """
        limit = limit or self.settings.max_compensation_records
        builder = SqlBuilder(job.source)
        pk = job.source.primary_key
        collection = job.target_collection
        page_size = self.settings.rescan_page_size
        collection_exists = await self._timed(self.vector_store.has_collection(collection), "has_collection")

        missing: List[Any] = []
        offset = 0
        scanned = 0
        while len(missing) < limit:
            sql, params = builder.key_page(page_size, offset)
            page = await self._timed(self.source_adapter.query(job.source, sql, params), "source_keys")
            keys = [row[pk] for row in page]
            if not keys:
                break
            scanned += len(keys)
            found = set()
            if collection_exists:
                found = set(await self._lookup_targets(collection, pk, keys, fields=[pk]))
            missing.extend(key for key in keys if _key(key) not in found)
            if len(keys) < page_size:
                break
            offset += page_size

        self.logger.info("Rescanned source keys", extra={
            "job_id": job.job_id,
            "scanned": scanned,
            "missing": len(missing)
        })
        return missing[:limit]

    async def compensate(self, job: SyncJob, result: Optional[ConsistencyCheckResult] = None) -> CompensationOutcome:
        """
        Re-write records missing from the target.

        When the count gap is larger than the missing ids the sample found,
        the source keys are rescanned to find the real missing records. A
        record counts as compensated only after a follow-up lookup returns
        exactly one row for its key.

        Args:
            job: Job to repair
            result: A previous check result; a fresh check runs when omitted

        Returns:
            CompensationOutcome listing compensated and still-missing ids
        """
        started = time.perf_counter()
        outcome = CompensationOutcome(job_id=job.job_id)
        pending: List[Any] = []

        try:
            if result is None:
                result = await self.check(job)
            if result.error_message:
                outcome.error_message = f"Compensation skipped: {result.error_message}"
                return outcome

            pending = list(result.missing_ids)
            if result.count_gap > len(pending):
                pending = await self.find_missing_keys(job)
            pending = list(dict.fromkeys(pending))[:self.settings.max_compensation_records]

            self.logger.info("Starting compensation", extra={"job_id": job.job_id, "missing": len(pending)})
            while pending:
                chunk = pending[:_KEY_CHUNK]
                await self._compensate_chunk(job, chunk, outcome)
                pending = pending[len(chunk):]
        except Exception as e:
            outcome.error_message = f"Compensation failed: {e}"
            outcome.still_missing_ids.extend(
                key for key in pending
                if key not in outcome.compensated_ids and key not in outcome.skipped_ids
                and key not in outcome.still_missing_ids
            )
            self.logger.error("Compensation failed", extra={"job_id": job.job_id}, exc_info=True)
        finally:
            outcome.duration_seconds = time.perf_counter() - started

        if self.metrics:
            self.metrics.compensated_records.labels(outcome="confirmed").inc(outcome.compensated_count)
            self.metrics.compensated_records.labels(outcome="missing").inc(outcome.still_missing_count)

        self.logger.info("Compensation finished", extra={"job_id": job.job_id, **outcome.to_dict()})
        return outcome

    async def _compensate_chunk(self, job: SyncJob, keys: List[Any], outcome: CompensationOutcome):
        pk = job.source.primary_key
        sql, params = SqlBuilder(job.source).select_by_keys(keys)
        rows = await self._timed(self.source_adapter.query(job.source, sql, params), "source_fetch")
        by_key = {_key(row.get(pk)): row for row in rows}

        for key in keys:
            record = by_key.get(_key(key))
            if record is None:
                # deleted from the source since the check
                outcome.skipped_ids.append(key)
                continue
            written = await self.sync_engine.write_record(job, record, stage=SyncStage.COMPENSATE)
            if written and await self._confirm(job, key):
                outcome.compensated_ids.append(key)
            else:
                outcome.still_missing_ids.append(key)

    async def _confirm(self, job: SyncJob, key: Any) -> bool:
        pk = job.source.primary_key
        try:
            rows = await self._timed(
                self.vector_store.query(job.target_collection, key_expr(pk, key), fields=[pk], limit=2),
                "confirm_lookup"
            )
        except Exception as e:
            self.logger.warning("Confirmation lookup failed", extra={
                "job_id": job.job_id,
                "record_id": key,
                "error": str(e)
            })
            return False
        return len(rows) == 1
