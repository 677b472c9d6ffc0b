"""Immediate and batched anchoring of log records.

Critical and High severity records are anchored one by one as soon as they are
created. Everything else waits in an in-memory pending batch that is flushed
when it reaches ``max_batch_size`` or every ``flush_interval`` seconds,
whichever comes first.

The pending map is shared by record creation and the flush task. Flushes are
serialized, take a snapshot of at most ``max_batch_size`` of the oldest keys,
and remove from the map only the keys whose records were confirmed anchored.
A failed flush leaves the map exactly as it was, so the next cycle retries the
same records.

An immediate anchor of a queued record first takes it out of the map, waiting
for any flush whose snapshot holds it. A retryable failure puts it back.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

from chainshield_anchor.integrity.hashing import compute_batch_hash
from chainshield_anchor.ledger.client import AnchorResult, LedgerClient
from chainshield_anchor.models import AnchorMode, AnchorStatus, LogRecord, Severity
from chainshield_anchor.records.service import LogRecordService
from chainshield_anchor.utils import metrics

logger = logging.getLogger(__name__)


@dataclass
class BatchFlushResult:
    batch_hash: Optional[str]
    record_ids: list[str] = field(default_factory=list)
    result: Optional[AnchorResult] = None

    @property
    def success(self) -> bool:
        return bool(self.result and self.result.success)


class AnchoringCoordinator:
    """Decides how each record is anchored and owns the pending batch."""

    def __init__(
        self,
        records: LogRecordService,
        ledger: LedgerClient,
        max_batch_size: int = 100,
        flush_interval: float = 300,
    ):
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be positive")
        self.records = records
        self.ledger = ledger
        self.max_batch_size = max_batch_size
        self.flush_interval = flush_interval
        self._pending: dict[str, str] = {}  # record id -> content hash, insertion ordered
        self._lock = asyncio.Lock()
        self._flush_lock = asyncio.Lock()
        self._in_flight: set[str] = set()
        self._flush_scheduled = False
        self._timer: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def create_and_maybe_anchor(self, fields: Mapping) -> LogRecord:
        """Create and stamp a record, then anchor it now or queue it."""
        record = self.records.create(fields)
        if Severity(record.severity).anchors_immediately:
            await self._anchor_single(record)
            return self.records.get(record.id)
        await self.add_to_pending(record)
        return record

    async def anchor_immediately(self, record_id: str) -> AnchorResult:
        """Anchor one record on its own, outside of any batch."""
        self.records.get(record_id)
        record = await self._take_from_batch(record_id)
        if record.status != AnchorStatus.PENDING:
            logger.info(f"Record {record_id} is already {record.anchor_status}")
            return AnchorResult(
                success=record.is_anchored,
                mode=AnchorMode(record.anchor_mode) if record.anchor_mode else self.ledger.mode,
                log_id=record.ledger_log_id,
                tx_ref=record.tx_ref,
                block_ref=record.block_ref,
                anchored_at=record.anchored_at,
                error=None if record.is_anchored else record.anchor_error,
            )
        requeue = not Severity(record.severity).anchors_immediately
        return await self._anchor_single(record, requeue_on_retry=requeue)

    async def _take_from_batch(self, record_id: str) -> LogRecord:
        """Remove a record from the pending batch once no flush holds it."""
        while True:
            async with self._lock:
                if record_id not in self._in_flight:
                    self._pending.pop(record_id, None)
                    metrics.pending_records.set(len(self._pending))
                    break
            # Part of a snapshot being submitted; wait for that flush to settle.
            async with self._flush_lock:
                pass
        return self.records.get(record_id)

    async def _anchor_single(self, record: LogRecord, requeue_on_retry: bool = False) -> AnchorResult:
        """Individual anchor; ends in Anchored or Failed unless requeued."""
        try:
            result = await self.ledger.anchor_log(
                record.content_hash,
                category=record.category,
                user_id=record.actor_id,
                ref_uri=f"record://{record.id}",
            )
        except Exception as e:
            logger.error(f"Immediate anchoring error for record {record.id}: {e}", exc_info=True)
            result = AnchorResult.failure(self.ledger.mode, str(e), retryable=False)

        outcome = "success" if result.success else "failure"
        metrics.anchor_submissions.labels(kind="single", mode=result.mode.value, outcome=outcome).inc()

        requeue = requeue_on_retry and not result.success and result.retryable
        try:
            if result.success:
                self.records.mark_anchored(record.id, result)
                logger.info(
                    f"Record {record.id} anchored immediately",
                    extra={"ledger_log_id": result.log_id, "tx_ref": result.tx_ref},
                )
            elif requeue:
                logger.warning(f"Immediate anchoring failed for record {record.id}, back to the batch: {result.error}")
            else:
                self.records.mark_failed(record.id, result.error)
                logger.warning(f"Immediate anchoring failed for record {record.id}: {result.error}")
        except Exception as e:
            logger.error(f"Could not record anchoring outcome for {record.id}: {e}", exc_info=True)

        async with self._lock:
            if requeue:
                self._pending[record.id] = record.content_hash
            else:
                # Individually anchored records never join a batch.
                self._pending.pop(record.id, None)
            metrics.pending_records.set(len(self._pending))
        return result

    async def add_to_pending(self, record: LogRecord):
        """Queue a record for the next batch."""
        async with self._lock:
            self._pending[record.id] = record.content_hash
            metrics.pending_records.set(len(self._pending))
            trigger = self._claim_size_trigger()
        if trigger:
            self._spawn(self.flush(min_size=self.max_batch_size))

    def _claim_size_trigger(self) -> bool:
        # Caller holds self._lock. One size-triggered flush is queued at a time
        # and only counts records not already part of an in-flight snapshot.
        waiting = len(self._pending) - len(self._in_flight)
        if waiting >= self.max_batch_size and not self._flush_scheduled:
            self._flush_scheduled = True
            return True
        return False

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_idle(self):
        """Wait for size-triggered flushes started so far."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def flush(self, min_size: int = 1) -> BatchFlushResult:
        """Anchor up to ``max_batch_size`` pending records as one batch.

        Nothing is submitted when fewer than ``min_size`` records are pending.
        """
        async with self._flush_lock:
            async with self._lock:
                self._flush_scheduled = False
                snapshot = list(self._pending)[: self.max_batch_size]
                if len(snapshot) < min_size:
                    snapshot = []
                self._in_flight.update(snapshot)
            try:
                return await self._flush_snapshot(snapshot)
            finally:
                async with self._lock:
                    self._in_flight.difference_update(snapshot)

    async def _flush_snapshot(self, snapshot: list[str]) -> BatchFlushResult:
        if not snapshot:
            return BatchFlushResult(batch_hash=None)

        hashes = self.records.pending_content_hashes(snapshot)
        stale = [record_id for record_id in snapshot if record_id not in hashes]
        if stale:
            # Anchored individually (or failed) since they were queued.
            async with self._lock:
                for record_id in stale:
                    self._pending.pop(record_id, None)
            logger.info(f"Dropped {len(stale)} records that are no longer Pending from the batch")
        if not hashes:
            return BatchFlushResult(batch_hash=None)

        batch_hash = compute_batch_hash(hashes.values())
        try:
            result = await self.ledger.anchor_batch(batch_hash, len(hashes))
        except Exception as e:
            logger.error(f"Batch anchoring error: {e}", exc_info=True)
            result = AnchorResult.failure(self.ledger.mode, str(e), retryable=True)

        outcome = "success" if result.success else "failure"
        metrics.anchor_submissions.labels(kind="batch", mode=result.mode.value, outcome=outcome).inc()
        if not result.success:
            logger.warning(
                f"Batch anchoring failed, {len(hashes)} records stay pending: {result.error}",
                extra={"batch_hash": batch_hash},
            )
            return BatchFlushResult(batch_hash=batch_hash, record_ids=list(hashes), result=result)

        marked = self.records.mark_batch_anchored(hashes.keys(), result, batch_hash)
        async with self._lock:
            for record_id in hashes:
                self._pending.pop(record_id, None)
            metrics.pending_records.set(len(self._pending))
            self._in_flight.difference_update(hashes)
            trigger = self._claim_size_trigger()
        if trigger:
            self._spawn(self.flush(min_size=self.max_batch_size))
        metrics.batch_size.observe(len(marked))
        logger.info(
            "Batch anchored",
            extra={
                "batch_size": len(marked),
                "batch_hash": batch_hash,
                "tx_ref": result.tx_ref,
                "block_ref": result.block_ref,
            },
        )
        return BatchFlushResult(batch_hash=batch_hash, record_ids=marked, result=result)

    async def restore_pending(self) -> int:
        """Requeue records left Pending by a previous process."""
        restored = 0
        for record in self.records.list_pending():
            async with self._lock:
                if record.id not in self._pending:
                    self._pending[record.id] = record.content_hash
                    restored += 1
        metrics.pending_records.set(len(self._pending))
        if restored:
            logger.info(f"Restored {restored} pending records")
        return restored

    async def _run_periodic_flush(self):
        while True:
            await asyncio.sleep(self.flush_interval)
            try:
                await self.flush()
            except Exception as e:
                # Abandon this cycle; the next one retries the same snapshot.
                logger.error(f"Periodic flush error: {e}", exc_info=True)

    def start(self):
        """Start the periodic flush task."""
        if self._timer is None or self._timer.done():
            self._timer = asyncio.get_running_loop().create_task(self._run_periodic_flush())
            logger.info(f"Periodic flush every {self.flush_interval}s")

    async def stop(self):
        """Stop the periodic flush task and wait for in-flight flushes."""
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None
        await self.wait_idle()
