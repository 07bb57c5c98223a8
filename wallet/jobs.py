"""
Deferred settlement of withdrawals.

Moving a request to ``processing`` enqueues a settlement job in the same
storage transaction. A worker later drains due jobs and completes the
request, which books the debit in the ledger. Jobs live in storage, so a
restart does not lose pending settlements.
"""

import logging
import threading
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Optional
from uuid import UUID, uuid4

from .config import Settings
from .errors import LedgerUnavailableError
from .ledger import utcnow
from .models import JobStatus, SettlementJob, SettlementRunResult
from .storage import InMemoryStorage, StorageUnavailable

if TYPE_CHECKING:
    from .workflow import WithdrawalWorkflow

logger = logging.getLogger(__name__)


class SettlementQueue:
    def __init__(self, storage: InMemoryStorage, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.clock = clock

    def enqueue(self, withdrawal_id: UUID, run_after: Optional[datetime] = None) -> SettlementJob:
        now = self.clock()
        data = {
            "id": uuid4(),
            "withdrawal_id": withdrawal_id,
            "run_after": run_after or now,
            "status": JobStatus.NEW.value,
            "attempts": 0,
            "last_error": None,
            "created_at": now,
        }
        self.storage.insert_job(data)
        logger.info("Settlement of withdrawal %s scheduled for %s", withdrawal_id, data["run_after"])
        return SettlementJob(**data)

    def due(self, now: datetime, limit: int = 50) -> list[SettlementJob]:
        return [SettlementJob(**row) for row in self.storage.due_jobs(now, JobStatus.NEW.value, limit)]

    def mark_done(self, job: SettlementJob) -> None:
        self.storage.update_job(job.id, {"status": JobStatus.DONE.value, "attempts": job.attempts + 1})

    def mark_attempt_failed(self, job: SettlementJob, error: Exception, max_attempts: int) -> SettlementJob:
        attempts = job.attempts + 1
        status = JobStatus.FAILED if attempts >= max_attempts else JobStatus.NEW
        row = self.storage.update_job(job.id, {
            "status": status.value,
            "attempts": attempts,
            "last_error": str(error),
        })
        return SettlementJob(**row)


class SettlementWorker:
    def __init__(
        self,
        queue: SettlementQueue,
        workflow: "WithdrawalWorkflow",
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.queue = queue
        self.workflow = workflow
        self.settings = settings
        self.clock = clock

    def run_pending(self, now: Optional[datetime] = None) -> SettlementRunResult:
        result = SettlementRunResult()
        for job in self.queue.due(now or self.clock()):
            result.processed += 1
            try:
                self.workflow.complete(job.withdrawal_id)
            except (LedgerUnavailableError, StorageUnavailable) as e:
                if not self.queue.storage.is_open:
                    logger.warning("Storage closed while settling withdrawal %s; stopping this run", job.withdrawal_id)
                    result.retried += 1
                    break
                updated = self.queue.mark_attempt_failed(job, e, self.settings.settlement_max_attempts)
                if updated.status == JobStatus.FAILED:
                    logger.error("Settlement of withdrawal %s failed after %d attempts: %s",
                                 job.withdrawal_id, updated.attempts, e)
                    result.failed += 1
                else:
                    logger.warning("Settlement of withdrawal %s will be retried (attempt %d): %s",
                                   job.withdrawal_id, updated.attempts, e)
                    result.retried += 1
                continue
            except Exception as e:
                logger.exception("Settlement of withdrawal %s failed", job.withdrawal_id)
                self.queue.mark_attempt_failed(job, e, max_attempts=1)
                result.failed += 1
                continue
            self.queue.mark_done(job)
            result.completed += 1
        return result

    def run_forever(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.run_pending()
            except StorageUnavailable:
                logger.warning("Settlement storage unavailable; retrying in %.1fs", self.settings.settlement_poll_interval)
            stop_event.wait(self.settings.settlement_poll_interval)
