import copy
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, Optional
from uuid import UUID


class StorageError(Exception):
    pass


class StorageUnavailable(StorageError):
    pass


class UniqueConstraintViolation(StorageError):
    def __init__(self, table: str, key: tuple):
        self.table = table
        self.key = key
        super().__init__(f"Unique constraint violated on {table}: {key}")


class VersionConflict(StorageError):
    def __init__(self, row_id: UUID, expected: int, actual: int):
        self.row_id = row_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"Row {row_id} is at version {actual}, expected {expected}")


class CapacityExceeded(StorageError):
    def __init__(self, reviewer_id: UUID, max_capacity: int):
        self.reviewer_id = reviewer_id
        self.max_capacity = max_capacity
        super().__init__(f"Reviewer {reviewer_id} is at maximum capacity ({max_capacity})")


class RowNotFound(StorageError):
    def __init__(self, table: str, row_id: UUID):
        self.table = table
        self.row_id = row_id
        super().__init__(f"{table} row {row_id} not found")


_ABSENT = object()


class InMemoryStorage:
    """Process-local store with the guarantees a relational backend would give.

    Every mutation runs under one re-entrant lock. ``transaction()`` makes a
    block all-or-nothing: before a row is first changed inside the outermost
    transaction its prior value goes into an undo journal, and the journal is
    replayed if the block raises. A rollback therefore costs only the rows the
    block touched.

    Notifications are kept per target and trimmed to the newest
    ``notification_retention`` rows.
    """

    def __init__(self, notification_retention: int = 200):
        self.accounts: dict[UUID, dict] = {}
        self.ledger_entries: dict[UUID, dict] = {}
        self.entry_index: dict[tuple, UUID] = {}
        self.entries_by_account: dict[UUID, list[UUID]] = defaultdict(list)
        self.withdrawals: dict[UUID, dict] = {}
        self.withdrawal_idempotency_index: dict[tuple[UUID, str], UUID] = {}
        self.reviewers: dict[UUID, dict] = {}
        self.notifications: dict[UUID, list[dict]] = defaultdict(list)
        self.settlement_jobs: dict[UUID, dict] = {}
        self.notification_retention = notification_retention
        self._lock = threading.RLock()
        self._depth = 0
        self._journal: Optional[dict[tuple[str, object], object]] = None
        self._open = True

    # Lifecycle

    @property
    def is_open(self) -> bool:
        return self._open

    def close(self) -> None:
        with self._lock:
            self._open = False

    def reopen(self) -> None:
        with self._lock:
            self._open = True

    def ensure_open(self) -> None:
        if not self._open:
            raise StorageUnavailable("Storage is closed")

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStorage"]:
        with self._lock:
            self.ensure_open()
            outermost = self._depth == 0
            if outermost:
                self._journal = {}
            self._depth += 1
            try:
                yield self
            except BaseException:
                if outermost:
                    self._rollback()
                raise
            finally:
                self._depth -= 1
                if outermost:
                    self._journal = None

    def _touch(self, table: str, key) -> None:
        """Record a row's value before its first change in the current transaction."""
        if self._journal is None or (table, key) in self._journal:
            return
        rows = getattr(self, table)
        self._journal[(table, key)] = copy.deepcopy(rows[key]) if key in rows else _ABSENT

    def _rollback(self) -> None:
        for (table, key), prior in self._journal.items():
            rows = getattr(self, table)
            if prior is _ABSENT:
                rows.pop(key, None)
            else:
                rows[key] = prior

    def _read(self, table: dict, row_id: UUID) -> Optional[dict]:
        with self._lock:
            self.ensure_open()
            row = table.get(row_id)
            return copy.deepcopy(row) if row is not None else None

    def _read_all(self, rows: Iterable[dict]) -> list[dict]:
        with self._lock:
            self.ensure_open()
            return [copy.deepcopy(row) for row in rows]

    # Accounts

    def insert_account(self, data: dict) -> None:
        with self.transaction():
            if data["id"] in self.accounts:
                raise UniqueConstraintViolation("accounts", (data["id"],))
            self._touch("accounts", data["id"])
            self.accounts[data["id"]] = copy.deepcopy(data)

    def get_account(self, account_id: UUID) -> Optional[dict]:
        return self._read(self.accounts, account_id)

    def list_accounts(self) -> list[dict]:
        return self._read_all(list(self.accounts.values()))

    def update_account(self, account_id: UUID, changes: dict) -> dict:
        with self.transaction():
            row = self.accounts.get(account_id)
            if row is None:
                raise RowNotFound("accounts", account_id)
            self._touch("accounts", account_id)
            row.update(copy.deepcopy(changes))
            return copy.deepcopy(row)

    # Ledger

    def insert_ledger_entry(self, data: dict) -> None:
        with self.transaction():
            account_id = data["account_id"]
            key = (account_id, data["category"], data["reference"])
            if data["reference"] is not None and key in self.entry_index:
                raise UniqueConstraintViolation("ledger_entries", key)
            self._touch("ledger_entries", data["id"])
            self._touch("entries_by_account", account_id)
            self.ledger_entries[data["id"]] = dict(data)
            self.entries_by_account[account_id].append(data["id"])
            if data["reference"] is not None:
                self._touch("entry_index", key)
                self.entry_index[key] = data["id"]
            account = self.accounts.get(account_id)
            if account is not None:
                self._touch("accounts", account_id)
                account["cached_balance"] = None

    def find_ledger_entry(self, account_id: UUID, category: str, reference: str) -> Optional[dict]:
        with self._lock:
            self.ensure_open()
            entry_id = self.entry_index.get((account_id, category, reference))
            return dict(self.ledger_entries[entry_id]) if entry_id else None

    def ledger_entries_for(self, account_id: UUID) -> list[dict]:
        with self._lock:
            self.ensure_open()
            return [dict(self.ledger_entries[i]) for i in self.entries_by_account.get(account_id, [])]

    # Withdrawals

    def insert_withdrawal(self, data: dict) -> None:
        with self.transaction():
            key = data.get("idempotency_key")
            if key is not None:
                index_key = (data["account_id"], key)
                if index_key in self.withdrawal_idempotency_index:
                    raise UniqueConstraintViolation("withdrawals", index_key)
                self._touch("withdrawal_idempotency_index", index_key)
                self.withdrawal_idempotency_index[index_key] = data["id"]
            self._touch("withdrawals", data["id"])
            self.withdrawals[data["id"]] = copy.deepcopy(data)

    def get_withdrawal(self, withdrawal_id: UUID) -> Optional[dict]:
        return self._read(self.withdrawals, withdrawal_id)

    def find_withdrawal_by_key(self, account_id: UUID, idempotency_key: str) -> Optional[dict]:
        with self._lock:
            self.ensure_open()
            withdrawal_id = self.withdrawal_idempotency_index.get((account_id, idempotency_key))
            return copy.deepcopy(self.withdrawals[withdrawal_id]) if withdrawal_id else None

    def find_withdrawals(
        self,
        account_id: Optional[UUID] = None,
        reviewer_id: Optional[UUID] = None,
        statuses: Optional[Iterable[str]] = None,
        submitted_since: Optional[datetime] = None,
    ) -> list[dict]:
        status_filter = set(statuses) if statuses is not None else None
        with self._lock:
            self.ensure_open()
            rows = [
                w for w in self.withdrawals.values()
                if (account_id is None or w["account_id"] == account_id)
                and (reviewer_id is None or w["reviewer_id"] == reviewer_id)
                and (status_filter is None or w["status"] in status_filter)
                and (submitted_since is None or w["submitted_at"] >= submitted_since)
            ]
            return self._read_all(rows)

    def compare_and_set_withdrawal(self, withdrawal_id: UUID, expected_version: int, changes: dict) -> dict:
        with self.transaction():
            row = self.withdrawals.get(withdrawal_id)
            if row is None:
                raise RowNotFound("withdrawals", withdrawal_id)
            if row["version"] != expected_version:
                raise VersionConflict(withdrawal_id, expected_version, row["version"])
            self._touch("withdrawals", withdrawal_id)
            row.update(copy.deepcopy(changes))
            row["version"] = expected_version + 1
            return copy.deepcopy(row)

    # Reviewers

    def insert_reviewer(self, data: dict) -> None:
        with self.transaction():
            if data["id"] in self.reviewers:
                raise UniqueConstraintViolation("reviewers", (data["id"],))
            self._touch("reviewers", data["id"])
            self.reviewers[data["id"]] = copy.deepcopy(data)

    def get_reviewer(self, reviewer_id: UUID) -> Optional[dict]:
        return self._read(self.reviewers, reviewer_id)

    def list_reviewers(self) -> list[dict]:
        return self._read_all(list(self.reviewers.values()))

    def update_reviewer(self, reviewer_id: UUID, changes: dict) -> dict:
        with self.transaction():
            row = self.reviewers.get(reviewer_id)
            if row is None:
                raise RowNotFound("reviewers", reviewer_id)
            self._touch("reviewers", reviewer_id)
            row.update(copy.deepcopy(changes))
            return copy.deepcopy(row)

    def attach_account(self, reviewer_id: UUID, account_id: UUID, enforce_capacity: bool = True) -> None:
        """Point an account at a reviewer and add it to the reviewer's list as one write."""
        with self.transaction():
            reviewer = self.reviewers.get(reviewer_id)
            if reviewer is None:
                raise RowNotFound("reviewers", reviewer_id)
            account = self.accounts.get(account_id)
            if account is None:
                raise RowNotFound("accounts", account_id)
            self._touch("accounts", account_id)
            if account_id in reviewer["assigned_account_ids"]:
                account["assigned_reviewer_id"] = reviewer_id
                return
            if enforce_capacity and len(reviewer["assigned_account_ids"]) >= reviewer["max_capacity"]:
                raise CapacityExceeded(reviewer_id, reviewer["max_capacity"])
            self._touch("reviewers", reviewer_id)
            reviewer["assigned_account_ids"].append(account_id)
            account["assigned_reviewer_id"] = reviewer_id

    def detach_account(self, account_id: UUID) -> Optional[UUID]:
        """Clear an account's reviewer and drop it from that reviewer's list. Returns the old reviewer id."""
        with self.transaction():
            account = self.accounts.get(account_id)
            if account is None:
                raise RowNotFound("accounts", account_id)
            previous = account.get("assigned_reviewer_id")
            self._touch("accounts", account_id)
            account["assigned_reviewer_id"] = None
            if previous is not None and previous in self.reviewers:
                assigned = self.reviewers[previous]["assigned_account_ids"]
                if account_id in assigned:
                    self._touch("reviewers", previous)
                    assigned.remove(account_id)
            return previous

    def clear_reviewer_accounts(self, reviewer_id: UUID) -> list[UUID]:
        with self.transaction():
            reviewer = self.reviewers.get(reviewer_id)
            if reviewer is None:
                raise RowNotFound("reviewers", reviewer_id)
            cleared = list(reviewer["assigned_account_ids"])
            for account_id in cleared:
                account = self.accounts.get(account_id)
                if account is not None and account.get("assigned_reviewer_id") == reviewer_id:
                    self._touch("accounts", account_id)
                    account["assigned_reviewer_id"] = None
            self._touch("reviewers", reviewer_id)
            reviewer["assigned_account_ids"] = []
            return cleared

    def attach_withdrawal(self, reviewer_id: UUID, withdrawal_id: UUID) -> None:
        with self.transaction():
            reviewer = self.reviewers.get(reviewer_id)
            if reviewer is None:
                raise RowNotFound("reviewers", reviewer_id)
            if withdrawal_id not in reviewer["assigned_withdrawal_ids"]:
                self._touch("reviewers", reviewer_id)
                reviewer["assigned_withdrawal_ids"].append(withdrawal_id)

    def detach_withdrawal(self, reviewer_id: UUID, withdrawal_id: UUID) -> None:
        with self.transaction():
            reviewer = self.reviewers.get(reviewer_id)
            if reviewer is not None and withdrawal_id in reviewer["assigned_withdrawal_ids"]:
                self._touch("reviewers", reviewer_id)
                reviewer["assigned_withdrawal_ids"].remove(withdrawal_id)

    # Notifications

    def insert_notification(self, data: dict) -> None:
        with self.transaction():
            target_id = data["target_id"]
            self._touch("notifications", target_id)
            rows = self.notifications[target_id]
            rows.append(copy.deepcopy(data))
            del rows[:-self.notification_retention]

    def notifications_for(self, target_id: UUID) -> list[dict]:
        with self._lock:
            self.ensure_open()
            return self._read_all(self.notifications.get(target_id, []))

    # Settlement jobs

    def insert_job(self, data: dict) -> None:
        with self.transaction():
            self._touch("settlement_jobs", data["id"])
            self.settlement_jobs[data["id"]] = copy.deepcopy(data)

    def get_job(self, job_id: UUID) -> Optional[dict]:
        return self._read(self.settlement_jobs, job_id)

    def due_jobs(self, now: datetime, status: str, limit: int = 50) -> list[dict]:
        with self._lock:
            self.ensure_open()
            rows = [
                j for j in self.settlement_jobs.values()
                if j["status"] == status and j["run_after"] <= now
            ]
            rows.sort(key=lambda j: j["run_after"])
            return self._read_all(rows[:limit])

    def update_job(self, job_id: UUID, changes: dict) -> dict:
        with self.transaction():
            row = self.settlement_jobs.get(job_id)
            if row is None:
                raise RowNotFound("settlement_jobs", job_id)
            self._touch("settlement_jobs", job_id)
            row.update(copy.deepcopy(changes))
            return copy.deepcopy(row)
