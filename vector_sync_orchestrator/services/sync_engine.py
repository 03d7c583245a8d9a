"""
Batch sync engine for Vector Sync Orchestrator

Executes one job end to end: pull records from the source, vectorize them,
partition into governor-sized batches and write each batch to the vector
store under retry and timeout. Adapter failures become counted failures and
error records; they never escape to the scheduler.
"""

import asyncio
import json
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..adapters.base import SourceAdapter, Vectorizer, VectorStoreAdapter, Record, key_expr, keys_expr
from ..adapters.sql import SqlBuilder
from ..core.config import SyncSettings, RetrySettings
from ..core.exceptions import (
    ErrorRegistry,
    ValidationError,
    DimensionMismatchError,
    WriteRejectedError,
    RetryExhaustedError
)
from ..models.job import SyncJob, JobKind, JobStatus
from ..models.execution import Batch, BatchResult, ErrorRecord, SyncStage, ProcessStatus
from ..models.worker import TierName
from ..utils.logger import get_logger, set_log_context
from ..utils.metrics import SyncMetrics
from .fault_tolerance import RetryExecutor, RetryPolicy, classify_error
from .job_registry import JobRegistry, CancellationToken
from .resource_governor import ResourceGovernor

# Size of a float in the serialized vector payload
_BYTES_PER_DIMENSION = 8
_SIZE_SAMPLE = 20
_KEY_CHUNK = 500


class BatchSyncEngine:
    """
    Runs full and incremental syncs through one batch write path.

    Provides:
    - ``execute`` to run a job by kind and finalize its status
    - ``run_full`` / ``run_incremental``
    - ``write_record`` idempotent single-record upsert used by compensation
    - ``retry_failed_records`` selective retry from the error-record log
    - ``rollback`` removal of the rows written by the last run
    """

    def __init__(
        self,
        source_adapter: SourceAdapter,
        vectorizer: Vectorizer,
        vector_store: VectorStoreAdapter,
        governor: ResourceGovernor,
        registry: JobRegistry,
        settings: Optional[SyncSettings] = None,
        retry_settings: Optional[RetrySettings] = None,
        metrics: Optional[SyncMetrics] = None,
        sleep=asyncio.sleep
    ):
        self.source_adapter = source_adapter
        self.vectorizer = vectorizer
        self.vector_store = vector_store
        self.governor = governor
        self.registry = registry
        self.settings = settings or SyncSettings()
        self.retry_settings = retry_settings or RetrySettings()
        self.metrics = metrics
        self.retry = RetryExecutor(RetryPolicy.from_settings(self.retry_settings), metrics, sleep)
        self.error_registry = ErrorRegistry()

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="sync_engine")

    # Job execution

    async def execute(self, job: SyncJob, token: Optional[CancellationToken] = None) -> BatchResult:
        """
        Run ``job`` according to its kind and move it to a terminal status.

        Args:
            job: Job to run; moved to RUNNING if it is not already
            token: Cancellation token checked between batches

        Returns:
            Aggregated BatchResult of the run
        """
        token = token or CancellationToken(job.timeout_seconds)
        if job.status is not JobStatus.RUNNING:
            if job.status is not JobStatus.QUEUED:
                job.transition_to(JobStatus.QUEUED)
            job.transition_to(JobStatus.RUNNING)
        job.rollback_watermark = job.high_watermark

        self.logger.info("Starting sync run", extra={
            "job_id": job.job_id,
            "kind": job.kind.value,
            "exec_count": job.exec_count,
            "collection": job.target_collection
        })

        try:
            if job.kind is JobKind.INCREMENTAL:
                result = await self.run_incremental(job, token)
            else:
                result = await self.run_full(job, token)
        except Exception as e:
            self.logger.error("Sync run aborted", extra={"job_id": job.job_id}, exc_info=True)
            result = BatchResult(error_message=f"sync aborted: {e}")
            self._resume_if_paused(job)
            job.mark_failed(result.error_message)
            self._count_job(job)
            return result

        self._finalize(job, result)
        return result

    async def run_full(self, job: SyncJob, token: Optional[CancellationToken] = None) -> BatchResult:
        """Sync the entire source snapshot."""
        token = token or CancellationToken(job.timeout_seconds)
        started = time.perf_counter()
        await self.ensure_collection(job)
        sql, params = SqlBuilder(job.source).select_all()
        records = await self._fetch(job, sql, params)
        return await self._sync_records(job, records, token, started)

    async def run_incremental(self, job: SyncJob, token: Optional[CancellationToken] = None) -> BatchResult:
        """
        Sync records newer than the job's high-watermark.

        The new watermark is reported on the result; ``execute`` stores it on
        the job only when the run succeeds.
        """
        token = token or CancellationToken(job.timeout_seconds)
        started = time.perf_counter()
        await self.ensure_collection(job)
        sql, params = SqlBuilder(job.source).select_since(job.high_watermark)
        records = await self._fetch(job, sql, params)
        result = await self._sync_records(job, records, token, started)

        column = job.source.increment_column
        values = [record[column] for record in records if record.get(column) is not None]
        if values:
            result.high_watermark = max(values)
        return result

    async def ensure_collection(self, job: SyncJob):
        """Create the target collection with the job dimension if it does not exist."""
        collection = job.target_collection

        async def _ensure():
            if await self.vector_store.has_collection(collection):
                return
            created = await self.vector_store.create_collection(collection, job.dimension, {
                "primary_key": job.source.primary_key,
                "vector_field": self.settings.vector_field
            })
            if not created:
                raise WriteRejectedError(collection, "create_collection")
            self.logger.info("Created target collection", extra={
                "job_id": job.job_id,
                "collection": collection,
                "dimension": job.dimension
            })

        await self.retry.execute(
            _ensure,
            operation=f"ensure_collection:{collection}",
            timeout=self.settings.batch_timeout_seconds
        )

    # Batching

    def partition(self, job: SyncJob, records: Sequence[Record], batch_size: int) -> List[Batch]:
        """Split records into numbered batches of at most ``batch_size``."""
        return [
            Batch(job_id=job.job_id, batch_number=number, records=list(records[start:start + batch_size]))
            for number, start in enumerate(range(0, len(records), batch_size), start=1)
        ]

    def estimate_record_size(self, records: Sequence[Record], dimension: int) -> int:
        """Approximate bytes per record once vectorized."""
        sample = records[:_SIZE_SAMPLE]
        payload = sum(len(json.dumps(record, default=str)) for record in sample) // max(1, len(sample))
        return payload + dimension * _BYTES_PER_DIMENSION

    async def _sync_records(
        self,
        job: SyncJob,
        records: List[Record],
        token: CancellationToken,
        started: float
    ) -> BatchResult:
        total = len(records)
        job.update_progress(0, total)
        if not records:
            self.logger.info("Source returned no records", extra={"job_id": job.job_id})
            return BatchResult(latency_seconds=time.perf_counter() - started)

        item_size = self.estimate_record_size(records, job.dimension)
        batch_size = self.governor.calculate_batch_size(item_size, job.batch_size)
        batches = self.partition(job, records, batch_size)
        pool = self.governor.tier(TierName.BATCH)

        self.logger.info("Dispatching batches", extra={
            "job_id": job.job_id,
            "records": total,
            "batches": len(batches),
            "batch_size": batch_size
        })

        progress = BatchResult()

        async def run_and_track(batch: Batch) -> BatchResult:
            nonlocal progress
            batch_result = await self._run_batch(job, batch, token)
            progress = progress + batch_result
            job.update_progress(progress.processed)
            return batch_result

        futures = []
        dispatched: List[Batch] = []
        for batch in batches:
            await self._wait_if_paused(job, token)
            if token.should_stop:
                break
            futures.append(await pool.submit(run_and_track, batch))
            dispatched.append(batch)

        outcomes = await asyncio.gather(*futures, return_exceptions=True)

        result = BatchResult()
        for batch, outcome in zip(dispatched, outcomes):
            if isinstance(outcome, BaseException):
                # _run_batch converts adapter errors itself; this is an engine bug
                self.logger.error("Batch crashed", extra={
                    "job_id": job.job_id,
                    "batch_number": batch.batch_number
                }, exc_info=outcome)
                self._record_error(job, batch.batch_number, batch.keys(job.source.primary_key),
                                   outcome, SyncStage.WRITE, 0)
                outcome = BatchResult(failed=batch.size, batches_failed=1)
            result = result + outcome

        if len(dispatched) < len(batches) or result.cancelled:
            result.cancelled = True
            if token.timed_out:
                result.error_message = f"timed out after {token.timeout_seconds} seconds"
            else:
                result.error_message = "cancelled by request"

        result.latency_seconds = time.perf_counter() - started
        self.logger.info("Batches finished", extra={
            "job_id": job.job_id,
            **result.to_dict()
        })
        return result

    async def _run_batch(
        self,
        job: SyncJob,
        batch: Batch,
        token: CancellationToken,
        record_errors: bool = True
    ) -> BatchResult:
        """Vectorize and write one batch; never raises for adapter failures."""
        await self._wait_if_paused(job, token)
        if token.should_stop:
            return BatchResult(cancelled=True)

        started = time.perf_counter()
        pk = job.source.primary_key
        documents, rejected = await self._vectorize_batch(job, batch, record_errors)
        failed = len(rejected)
        succeeded = 0
        written_keys: List[Any] = []

        if documents:
            async def revectorize(attempt: int, error: Exception):
                if isinstance(error, DimensionMismatchError):
                    self.logger.warning("Store reported dimension mismatch, re-vectorizing batch", extra={
                        "job_id": job.job_id,
                        "batch_number": batch.batch_number
                    })
                    for document in documents:
                        document[self.settings.vector_field] = await self._embed(job, document)

            try:
                await self.retry.execute(
                    self._write_batch,
                    job,
                    documents,
                    operation=f"batch_write:{job.job_id}#{batch.batch_number}",
                    timeout=self.settings.batch_timeout_seconds,
                    on_retry=revectorize
                )
                succeeded = len(documents)
                written_keys = [document[pk] for document in documents]
            except Exception as e:
                failed += len(documents)
                attempts = e.attempts if isinstance(e, RetryExhaustedError) else 1
                if record_errors:
                    self._record_error(job, batch.batch_number, [d[pk] for d in documents],
                                       e, SyncStage.WRITE, attempts)

        latency = time.perf_counter() - started
        batch_ok = failed == 0
        if self.metrics:
            self.metrics.batches.labels(outcome="succeeded" if batch_ok else "failed").inc()
            self.metrics.records.labels(outcome="succeeded").inc(succeeded)
            self.metrics.records.labels(outcome="failed").inc(failed)
            self.metrics.batch_latency.observe(latency)

        return BatchResult(
            succeeded=succeeded,
            failed=failed,
            latency_seconds=latency,
            batches_succeeded=1 if batch_ok else 0,
            batches_failed=0 if batch_ok else 1,
            written_keys=written_keys
        )

    async def _write_batch(self, job: SyncJob, documents: List[Record]):
        """
        Upsert one batch by primary key.

        Rows already in the collection are updated in place and only new keys
        go through ``batch_insert``. Nothing is deleted before the write.
        """
        collection = job.target_collection
        pk = job.source.primary_key
        new_documents = documents
        if self.settings.replace_existing:
            existing = await self._existing_keys(collection, pk, [document[pk] for document in documents])
            new_documents = []
            for document in documents:
                if document[pk] not in existing:
                    new_documents.append(document)
                elif not await self.vector_store.update(collection, key_expr(pk, document[pk]), document):
                    raise WriteRejectedError(collection, "update")
        if new_documents and not await self.vector_store.batch_insert(collection, new_documents):
            raise WriteRejectedError(collection, "batch_insert")

    async def _existing_keys(self, collection: str, pk: str, keys: List[Any]) -> set:
        limit = 2 * len(keys)
        rows = await self.vector_store.query(collection, keys_expr(pk, keys), fields=[pk], limit=limit)
        found = {row.get(pk) for row in rows}
        if len(rows) >= limit:
            # Duplicate rows can fill the page; confirm the unseen keys one by one
            for key in keys:
                if key not in found and await self.vector_store.query(
                    collection, key_expr(pk, key), fields=[pk], limit=1
                ):
                    found.add(key)
        return found

    # Vectorization

    def record_text(self, job: SyncJob, record: Record) -> str:
        """Text fed to the vectorizer: configured text fields, else every string column."""
        fields = job.source.text_fields or [
            name for name, value in record.items()
            if isinstance(value, str) and name != self.settings.vector_field
        ]
        parts = [str(record[name]) for name in fields if record.get(name) is not None]
        return self.settings.text_separator.join(parts).strip()

    async def _vectorize_once(self, job: SyncJob, text: str) -> List[float]:
        vector = await self.retry.execute(
            self.vectorizer.vectorize,
            text,
            operation=f"vectorize:{job.job_id}",
            timeout=self.settings.vectorize_timeout_seconds
        )
        if len(vector) != job.dimension:
            raise DimensionMismatchError(job.dimension, len(vector), job.target_collection)
        return list(vector)

    async def _embed(self, job: SyncJob, record: Record) -> List[float]:
        """
        Vectorize one record.

        A dimension mismatch is retried once with a fresh embedding before it
        is reported as a validation failure.
        """
        pk = job.source.primary_key
        if record.get(pk) is None:
            raise ValidationError(pk, "record has no primary key value")
        text = self.record_text(job, record)
        if not text:
            raise ValidationError("text", "record has no text to vectorize", record.get(pk))

        try:
            return await self._vectorize_once(job, text)
        except DimensionMismatchError as e:
            self.logger.warning("Embedding dimension mismatch, re-vectorizing", extra={
                "job_id": job.job_id,
                "record_id": record.get(pk),
                "expected": e.expected,
                "actual": e.actual
            })
        try:
            return await self._vectorize_once(job, text)
        except DimensionMismatchError as e:
            raise ValidationError("vector", e.message, record.get(pk)) from e

    async def prepare_document(self, job: SyncJob, record: Record) -> Record:
        """Copy of ``record`` with its embedding under the vector field."""
        document = {k: v for k, v in record.items() if k != self.settings.vector_field}
        document[self.settings.vector_field] = await self._embed(job, record)
        return document

    async def _vectorize_batch(
        self,
        job: SyncJob,
        batch: Batch,
        record_errors: bool = True
    ) -> Tuple[List[Record], List[Tuple[Record, Exception]]]:
        outcomes = await asyncio.gather(
            *(self.prepare_document(job, record) for record in batch.records),
            return_exceptions=True
        )
        documents: List[Record] = []
        rejected: List[Tuple[Record, Exception]] = []
        for record, outcome in zip(batch.records, outcomes):
            if isinstance(outcome, Exception):
                rejected.append((record, outcome))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                documents.append(outcome)

        if rejected and record_errors:
            by_type: Dict[Any, List[Tuple[Record, Exception]]] = {}
            for record, error in rejected:
                by_type.setdefault(classify_error(error), []).append((record, error))
            pk = job.source.primary_key
            for group in by_type.values():
                error = group[0][1]
                attempts = error.attempts if isinstance(error, RetryExhaustedError) else 1
                self._record_error(job, batch.batch_number, [r.get(pk) for r, _ in group],
                                   error, SyncStage.VECTORIZE, attempts)
        return documents, rejected

    # Single-record path

    async def write_record(
        self,
        job: SyncJob,
        record: Record,
        stage: SyncStage = SyncStage.WRITE
    ) -> bool:
        """
        Idempotently write one source record.

        The record is vectorized, then looked up by primary key: an existing
        row is updated, otherwise a new row is inserted. Calling this twice
        leaves one row.

        Args:
            job: Job owning the target collection
            record: Source record (without vector)
            stage: Stage stamped on an error record if the write fails

        Returns:
            True if the row was written
        """
        pk = job.source.primary_key
        collection = job.target_collection
        try:
            await self.ensure_collection(job)
            document = await self.prepare_document(job, record)
            expr = key_expr(pk, document[pk])

            async def _upsert() -> str:
                existing = await self.vector_store.query(collection, expr, fields=[pk], limit=1)
                if existing:
                    operation, ok = "update", await self.vector_store.update(collection, expr, document)
                else:
                    operation, ok = "insert", await self.vector_store.insert(collection, document)
                if not ok:
                    raise WriteRejectedError(collection, operation)
                return operation

            operation = await self.retry.execute(
                _upsert,
                operation=f"write_record:{job.job_id}",
                timeout=self.settings.batch_timeout_seconds
            )
        except Exception as e:
            attempts = e.attempts if isinstance(e, RetryExhaustedError) else 1
            self._record_error(job, None, [record.get(pk)], e, stage, attempts)
            return False

        self.logger.debug("Wrote record", extra={
            "job_id": job.job_id,
            "record_id": record.get(pk),
            "operation": operation
        })
        return True

    # Error-record log

    def _record_error(
        self,
        job: SyncJob,
        batch_number: Optional[int],
        record_ids: List[Any],
        error: BaseException,
        stage: SyncStage,
        retry_count: int
    ):
        cause = error.last_error if isinstance(error, RetryExhaustedError) else error
        record = ErrorRecord(
            job_id=job.job_id,
            record_ids=list(record_ids),
            error_type=classify_error(error),
            sync_stage=stage,
            error_message=str(cause),
            batch_number=batch_number,
            retry_count=retry_count
        )
        self.registry.record_error(record)
        self.error_registry.record_error(error)
        self.logger.error("Recorded sync error", extra={
            "job_id": job.job_id,
            "batch_number": batch_number,
            "error_type": record.error_type.value,
            "sync_stage": stage.value,
            "records": len(record_ids),
            "error": str(cause)
        })

    async def retry_failed_records(self, job: SyncJob) -> BatchResult:
        """
        Re-sync the records listed in the job's pending error records.

        Records resolved on retry are marked RESOLVED. Failures go back to
        PENDING, or ABANDONED once ``max_record_retries`` is reached. Ids no
        longer present in the source are resolved without a write.

        Returns:
            Aggregated BatchResult of the retried records
        """
        pending = [r for r in self.registry.errors_for(job.job_id, ProcessStatus.PENDING) if r.record_ids]
        if not pending:
            return BatchResult()

        await self.ensure_collection(job)
        builder = SqlBuilder(job.source)
        token = CancellationToken()
        total = BatchResult()

        for error_record in pending:
            error_record.mark_retrying()
            try:
                rows: List[Record] = []
                for start in range(0, len(error_record.record_ids), _KEY_CHUNK):
                    sql, params = builder.select_by_keys(error_record.record_ids[start:start + _KEY_CHUNK])
                    rows.extend(await self._fetch(job, sql, params, record_errors=False))
                batch = Batch(job.job_id, error_record.batch_number or 0, rows)
                outcome = await self._run_batch(job, batch, token, record_errors=False)
            except Exception as e:
                self.logger.warning("Selective retry failed", extra={
                    "job_id": job.job_id,
                    "error_id": error_record.error_id,
                    "error": str(e)
                })
                outcome = BatchResult(failed=len(error_record.record_ids), batches_failed=1)

            error_record.retry_count += 1
            if outcome.failed == 0:
                error_record.process_status = ProcessStatus.RESOLVED
            elif error_record.retry_count >= self.retry_settings.max_record_retries:
                error_record.process_status = ProcessStatus.ABANDONED
            else:
                error_record.process_status = ProcessStatus.PENDING
            total = total + outcome

        self.logger.info("Selective retry finished", extra={"job_id": job.job_id, **total.to_dict()})
        return total

    # Rollback

    async def rollback(self, job: SyncJob) -> bool:
        """
        Undo the last run: delete the rows it wrote and restore the previous watermark.

        Returns:
            True if the job was rolled back
        """
        pk = job.source.primary_key
        keys = self.registry.run_keys(job.job_id)
        for start in range(0, len(keys), _KEY_CHUNK):
            chunk = keys[start:start + _KEY_CHUNK]
            await self.retry.execute(
                self._delete_keys,
                job,
                chunk,
                operation=f"rollback:{job.job_id}",
                timeout=self.settings.batch_timeout_seconds
            )
        job.high_watermark = job.rollback_watermark
        job.transition_to(JobStatus.ROLLED_BACK)
        self.registry.clear_run_keys(job.job_id)
        self.logger.info("Rolled back job", extra={"job_id": job.job_id, "deleted_rows": len(keys)})
        return True

    async def _delete_keys(self, job: SyncJob, keys: List[Any]):
        if not await self.vector_store.delete(job.target_collection, keys_expr(job.source.primary_key, keys)):
            raise WriteRejectedError(job.target_collection, "delete")

    # Helpers

    async def _fetch(
        self,
        job: SyncJob,
        sql: str,
        params: List[Any],
        record_errors: bool = True
    ) -> List[Record]:
        try:
            return await self.retry.execute(
                self.source_adapter.query,
                job.source,
                sql,
                params,
                operation=f"fetch:{job.job_id}",
                timeout=self.settings.fetch_timeout_seconds
            )
        except Exception as e:
            if record_errors:
                attempts = e.attempts if isinstance(e, RetryExhaustedError) else 1
                self._record_error(job, None, [], e, SyncStage.EXTRACT, attempts)
            raise

    async def _wait_if_paused(self, job: SyncJob, token: CancellationToken):
        if not token.paused:
            return
        if job.status is JobStatus.RUNNING:
            job.transition_to(JobStatus.PAUSED)
            self.logger.info("Job paused between batches", extra={
                "job_id": job.job_id,
                "progress_percent": job.progress_percent
            })
        await token.wait_if_paused()
        self._resume_if_paused(job)

    def _resume_if_paused(self, job: SyncJob):
        if job.status is JobStatus.PAUSED:
            job.transition_to(JobStatus.RUNNING)
            self.logger.info("Job resumed", extra={
                "job_id": job.job_id,
                "progress_percent": job.progress_percent
            })

    def _finalize(self, job: SyncJob, result: BatchResult):
        self._resume_if_paused(job)
        job.records_synced = result.succeeded
        job.records_failed = result.failed
        self.registry.set_run_keys(job.job_id, result.written_keys)

        if result.cancelled:
            job.mark_failed(result.error_message or "cancelled")
        elif result.failed == 0:
            job.transition_to(JobStatus.SUCCESS)
        elif result.failed <= job.error_threshold:
            job.transition_to(JobStatus.SUCCESS)
            job.error_message = (
                f"{result.failed} records failed within error threshold {job.error_threshold}"
            )
        else:
            job.mark_failed(
                f"partial failure: {result.batches_failed} of {result.batches_total} batches failed "
                f"({result.failed} of {result.processed} records)"
            )

        if job.status is JobStatus.SUCCESS:
            job.progress_percent = 100.0
            if job.kind is JobKind.INCREMENTAL and result.high_watermark is not None:
                job.high_watermark = result.high_watermark

        self._count_job(job)
        self.logger.info("Sync run finished", extra={
            "job_id": job.job_id,
            "status": job.status.value,
            "succeeded": result.succeeded,
            "failed": result.failed,
            "throughput": round(result.throughput, 2),
            "error_message": job.error_message
        })

    def _count_job(self, job: SyncJob):
        if self.metrics:
            self.metrics.jobs_finished.labels(status=job.status.value).inc()
