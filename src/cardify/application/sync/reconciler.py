"""
Sync Reconciler — Application layer orchestrator for offline reconciliation.

Drains the local sync queue against the Remote Gateway, then pulls
server-authoritative decks and cards without clobbering pending local edits.
Every failure becomes a queue-entry transition or a report field; nothing
escapes `run_cycle`.

Entry lifecycle: Pending -> InFlight -> Acked (removed) | Failed (back to
Pending with backoff) | DeadLettered (kept for inspection, never retried
automatically).
"""

import asyncio
import logging
from collections import Counter
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from cardify.domain.constants import (
    MAX_SYNC_RETRIES,
    RETRY_BASE_DELAY,
    RETRY_MAX_DELAY,
    SYNC_CONCURRENCY,
    SYNC_TABLE_ORDER,
)
from cardify.domain.errors import (
    AuthError,
    CardifyError,
    PermanentRemoteError,
    RemoteError,
    TransientRemoteError,
    ValidationError,
)
from cardify.domain.interfaces import (
    ConnectivitySignal,
    CredentialProvider,
    LocalStore,
    RemoteGateway,
)
from cardify.domain.models import (
    Card,
    Deck,
    EntityTable,
    EntryStatus,
    SyncOperation,
    SyncQueueEntry,
    utc_now,
)

logger = logging.getLogger(__name__)

ACKED = "acked"
RETRY = "retry"
DEAD_LETTER = "dead_letter"
SUSPENDED = "suspended"
SKIPPED = "skipped"
ERROR = "error"


@dataclass
class EntryOutcome:
    entry_id: str
    table: str
    entity_id: str
    operation: str
    result: str
    error: str | None = None


@dataclass
class SyncReport:
    """Summary of one reconciliation cycle."""

    started_at: datetime
    finished_at: datetime | None = None
    skipped_reason: str | None = None
    auth_suspended: bool = False
    deferred: int = 0
    outcomes: list[EntryOutcome] = field(default_factory=list)
    pulled: dict[str, tuple[int, int]] = field(default_factory=dict)
    pull_errors: list[str] = field(default_factory=list)

    def _count(self, result: str) -> int:
        return sum(1 for o in self.outcomes if o.result == result)

    @property
    def acked(self) -> int:
        return self._count(ACKED)

    @property
    def retried(self) -> int:
        return self._count(RETRY)

    @property
    def dead_lettered(self) -> list[EntryOutcome]:
        return [o for o in self.outcomes if o.result == DEAD_LETTER]

    @property
    def ok(self) -> bool:
        return (
            self.skipped_reason is None
            and not self.auth_suspended
            and not self.pull_errors
            and all(o.result in (ACKED, SKIPPED) for o in self.outcomes)
        )


class SyncReconciler:
    """
    Orchestrates push (queue drain) and pull (merge) against the remote.

    Follows Dependency Inversion: depends on the LocalStore and RemoteGateway
    ports, never on concrete adapters. At most one cycle runs at a time;
    entries for different entities are pushed with bounded parallelism,
    entries for the same entity strictly one after another.
    """

    def __init__(
        self,
        store: LocalStore,
        gateway: RemoteGateway,
        credentials: CredentialProvider,
        connectivity: ConnectivitySignal | None = None,
        max_retries: int = MAX_SYNC_RETRIES,
        retry_base_delay: float = RETRY_BASE_DELAY,
        retry_max_delay: float = RETRY_MAX_DELAY,
        concurrency: int = SYNC_CONCURRENCY,
        owner_scope: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._gateway = gateway
        self._credentials = credentials
        self._connectivity = connectivity
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.concurrency = max(1, concurrency)
        self.owner_scope = owner_scope
        self._clock = clock
        self._cycle_lock = asyncio.Lock()
        self._entity_locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._lock_users: Counter[tuple[str, str]] = Counter()
        self._suspended_token: str | None = None
        self._auth_suspended = False
        self.last_report: SyncReport | None = None

    # ------------------------------------------------------------------
    # Auth suspension
    # ------------------------------------------------------------------

    @property
    def is_suspended(self) -> bool:
        return self._auth_suspended

    def _suspend(self, token: str | None, error: AuthError) -> None:
        if not self._auth_suspended:
            logger.error(f"[sync] suspended until the credential changes: {error}")
        self._auth_suspended = True
        self._suspended_token = token

    def resume(self) -> None:
        """Lift an auth suspension explicitly (e.g. after a fresh login)."""
        if self._auth_suspended:
            logger.info("[sync] resumed")
        self._auth_suspended = False
        self._suspended_token = None

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def backoff_delay(self, attempts: int) -> float:
        return min(self.retry_base_delay * (2 ** max(0, attempts - 1)), self.retry_max_delay)

    async def run_cycle(self, now: datetime | None = None, pull: bool = True) -> SyncReport:
        async with self._cycle_lock:
            now = now or self._clock()
            report = SyncReport(started_at=now)
            try:
                await self._run(report, now, pull)
            except CardifyError as e:
                # Local store failures abort the cycle; the queue is untouched.
                logger.error(f"[sync] cycle aborted: {e}")
                report.skipped_reason = f"error: {e}"
            report.finished_at = self._clock()
            self.last_report = report
            self._log_report(report)
            return report

    async def _run(self, report: SyncReport, now: datetime, pull: bool) -> None:
        if self._connectivity is not None and not self._connectivity.online:
            report.skipped_reason = "offline"
            return

        token = await self._credentials.get_token()
        if not token:
            report.skipped_reason = "no_credential"
            return
        if self._auth_suspended:
            if token == self._suspended_token:
                report.skipped_reason = "auth_suspended"
                report.auth_suspended = True
                return
            self.resume()

        for table_name in SYNC_TABLE_ORDER:
            table = EntityTable(table_name)
            entries = await self._store.drain_pending_sync(table)
            ready = [e for e in entries if e.next_attempt_at is None or e.next_attempt_at <= now]
            report.deferred += len(entries) - len(ready)
            await self._push(ready, now, token, report)
            if self._auth_suspended:
                report.auth_suspended = True
                return

        if pull:
            await self._pull(token, report)

        if report.ok:
            await self._store.set_last_sync_at(now)

    def _log_report(self, report: SyncReport) -> None:
        if report.skipped_reason:
            logger.info(f"[sync] skipped: {report.skipped_reason}")
            return
        logger.info(
            f"[sync] acked={report.acked} retried={report.retried} "
            f"dead_lettered={len(report.dead_lettered)} deferred={report.deferred} "
            f"pulled={report.pulled}"
        )

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _entity_lock(self, key: tuple[str, str]) -> AsyncIterator[None]:
        """Serialize work on one entity; the lock is dropped once nobody holds or awaits it."""
        lock = self._entity_locks.get(key)
        if lock is None:
            lock = self._entity_locks[key] = asyncio.Lock()
        self._lock_users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._entity_locks[key]

    async def _push(
        self, entries: list[SyncQueueEntry], now: datetime, token: str, report: SyncReport
    ) -> None:
        if not entries:
            return
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _guarded(entry: SyncQueueEntry) -> None:
            async with semaphore:
                # Shielded so a cancelled cycle never abandons an entry mid-write.
                outcome = await asyncio.shield(self._process_entry(entry, now, token))
                if outcome is not None:
                    report.outcomes.append(outcome)

        await asyncio.gather(*(_guarded(e) for e in entries))

    async def _process_entry(
        self, entry: SyncQueueEntry, now: datetime, token: str
    ) -> EntryOutcome | None:
        async with self._entity_lock(entry.key):
            if self._auth_suspended:
                return self._outcome(entry, SUSPENDED)

            current = await self._store.get_entry(entry.id)
            if current is None or current.status != EntryStatus.PENDING:
                return None
            entry = current

            try:
                await self._dispatch(entry)
            except AuthError as e:
                self._suspend(token, e)
                return self._outcome(entry, SUSPENDED, str(e))
            except PermanentRemoteError as e:
                return await self._dead_letter(entry, str(e))
            except TransientRemoteError as e:
                return await self._retry(entry, str(e), now)
            except Exception as e:
                logger.error(
                    f"[sync] unexpected error for "
                    f"{entry.entity_table.value}/{entry.entity_id}: {e}",
                    exc_info=True,
                )
                return await self._retry(entry, f"unexpected: {e}", now)

            if not await self._store.mark_synced(entry):
                return self._outcome(entry, SKIPPED)
            logger.debug(
                f"[{entry.operation.value}] {entry.entity_table.value}/{entry.entity_id} acked"
            )
            return self._outcome(entry, ACKED)

    async def _dispatch(self, entry: SyncQueueEntry) -> Any:
        """Issue the remote call, healing idempotent replays of create and delete."""
        table = entry.entity_table
        if entry.operation == SyncOperation.CREATE:
            try:
                return await self._gateway.create_entity(table, entry.payload)
            except PermanentRemoteError as e:
                if e.status_code != 409:
                    raise
                logger.info(
                    f"[heal] {table.value}/{entry.entity_id} already exists remotely; updating"
                )
                return await self._gateway.update_entity(table, entry.entity_id, entry.payload)

        if entry.operation == SyncOperation.UPDATE:
            return await self._gateway.update_entity(table, entry.entity_id, entry.payload)

        try:
            return await self._gateway.delete_entity(table, entry.entity_id)
        except PermanentRemoteError as e:
            if e.status_code not in (404, 410):
                raise
            logger.info(f"[heal] {table.value}/{entry.entity_id} already gone remotely")
            return None

    async def _retry(self, entry: SyncQueueEntry, error: str, now: datetime) -> EntryOutcome:
        attempts = entry.retry_count + 1
        if attempts > self.max_retries:
            return await self._dead_letter(entry, f"retries exhausted: {error}")
        next_attempt_at = now + timedelta(seconds=self.backoff_delay(attempts))
        await self._store.record_failure(entry, error, next_attempt_at)
        logger.warning(
            f"[retry] {entry.entity_table.value}/{entry.entity_id} attempt {attempts}/"
            f"{self.max_retries}, next at {next_attempt_at.isoformat()}: {error}"
        )
        return self._outcome(entry, RETRY, error)

    async def _dead_letter(self, entry: SyncQueueEntry, error: str) -> EntryOutcome:
        if not await self._store.dead_letter(entry, error):
            return self._outcome(entry, SKIPPED, error)
        logger.error(
            f"[dead-letter] {entry.operation.value} {entry.entity_table.value}/"
            f"{entry.entity_id}: {error}"
        )
        return self._outcome(entry, DEAD_LETTER, error)

    @staticmethod
    def _outcome(entry: SyncQueueEntry, result: str, error: str | None = None) -> EntryOutcome:
        return EntryOutcome(
            entry_id=entry.id,
            table=entry.entity_table.value,
            entity_id=entry.entity_id,
            operation=entry.operation.value,
            result=result,
            error=error,
        )

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def _pull(self, token: str, report: SyncReport) -> None:
        for table_name in SYNC_TABLE_ORDER:
            table = EntityTable(table_name)
            try:
                records = await self._gateway.list_entities(table, self.owner_scope)
            except AuthError as e:
                self._suspend(token, e)
                report.auth_suspended = True
                return
            except RemoteError as e:
                logger.warning(f"[pull] {table.value} failed: {e}")
                report.pull_errors.append(f"{table.value}: {e}")
                continue
            except Exception as e:
                logger.error(f"[pull] {table.value} failed unexpectedly: {e}", exc_info=True)
                report.pull_errors.append(f"{table.value}: {e}")
                continue

            entities, unreadable = self._normalize(table, records)
            upserted, deleted = await self._store.replace_from_remote(
                table, entities, protected_ids=unreadable
            )
            report.pulled[table.value] = (upserted, deleted)

    @staticmethod
    def _normalize(
        table: EntityTable, records: list[dict[str, Any]]
    ) -> tuple[list[Deck] | list[Card], set[str]]:
        """Parse remote records; ids of unparseable ones are protected from deletion."""
        parse = Deck.from_payload if table == EntityTable.DECKS else Card.from_payload
        entities = []
        unreadable: set[str] = set()
        for record in records:
            try:
                entities.append(parse(record))
            except (ValidationError, AttributeError, TypeError, ValueError) as e:
                record_id = None
                if isinstance(record, dict):
                    record_id = record.get("id") or record.get("_id")
                if record_id:
                    unreadable.add(str(record_id))
                logger.warning(f"[pull] unreadable {table.value} record {record_id}: {e}")
        return entities, unreadable
