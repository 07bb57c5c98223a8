import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from .accounts import AccountService
from .assignment import AssignmentBalancer
from .config import Settings
from .jobs import SettlementQueue, SettlementWorker
from .ledger import BalanceCalculator, LedgerStore, utcnow
from .notifications import InMemoryNotifier, NotificationEmitter, Notifier
from .quota import QuotaEvaluator
from .storage import InMemoryStorage
from .workflow import WithdrawalWorkflow

logger = logging.getLogger(__name__)


@dataclass
class Platform:
    """Everything a request handler needs, built once at startup and closed at shutdown."""

    settings: Settings
    storage: InMemoryStorage
    notifier: Notifier
    ledger: LedgerStore
    calculator: BalanceCalculator
    quota: QuotaEvaluator
    balancer: AssignmentBalancer
    accounts: AccountService
    workflow: WithdrawalWorkflow
    settlements: SettlementQueue
    worker: SettlementWorker
    _stop: threading.Event = field(default_factory=threading.Event, repr=False)
    _worker_thread: Optional[threading.Thread] = field(default=None, repr=False)

    def start_worker(self) -> None:
        if self._worker_thread and self._worker_thread.is_alive():
            return
        self._stop.clear()
        self._worker_thread = threading.Thread(
            target=self.worker.run_forever, args=(self._stop,), name="settlement-worker", daemon=True
        )
        self._worker_thread.start()
        logger.info("Settlement worker started")

    def stop_worker(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._worker_thread:
            self._worker_thread.join(timeout)
            self._worker_thread = None

    def close(self) -> None:
        self.stop_worker()
        self.storage.close()
        logger.info("Platform closed")


def create_platform(
    settings: Optional[Settings] = None,
    storage: Optional[InMemoryStorage] = None,
    notifier: Optional[Notifier] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Platform:
    settings = settings or Settings()
    storage = storage or InMemoryStorage(notification_retention=settings.notification_retention)
    notifier = notifier or InMemoryNotifier(storage, clock)
    emitter = NotificationEmitter(notifier)

    ledger = LedgerStore(storage, clock)
    calculator = BalanceCalculator(ledger, settings.currency)
    quota = QuotaEvaluator(storage, ledger, settings)
    balancer = AssignmentBalancer(storage, emitter, settings, clock)
    accounts = AccountService(storage, ledger, quota, balancer, emitter, settings, clock)
    settlements = SettlementQueue(storage, clock)
    workflow = WithdrawalWorkflow(
        storage, ledger, calculator, quota, balancer, emitter, settlements, settings, clock
    )
    worker = SettlementWorker(settlements, workflow, settings, clock)

    return Platform(
        settings=settings,
        storage=storage,
        notifier=notifier,
        ledger=ledger,
        calculator=calculator,
        quota=quota,
        balancer=balancer,
        accounts=accounts,
        workflow=workflow,
        settlements=settlements,
        worker=worker,
    )
