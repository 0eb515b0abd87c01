"""Stream coordinator: owns adapters, timers and the per-source run discipline.

Per-source state machine:

    IDLE -> RUNNING -> IDLE             fetch cycle succeeded (or failed transiently)
    IDLE -> RUNNING -> ERROR_DISABLED   unhandled adapter error; needs enable_source()

Invariants:
  * at most one RUNNING cycle per source (running-set under a lock)
  * at most ``max_concurrent_sources`` RUNNING cycles overall (bounded semaphore,
    acquired without blocking: a trigger over the ceiling is skipped, never queued)

Every cycle opens its own database session, so timer threads never share a
sqlite3 connection.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from docstream.config import DocstreamConfig, SourceCfg
from docstream.db.connection import Database
from docstream.db.models import MessageStatus, SourceRecord, utcnow
from docstream.db.repository import Repository
from docstream.errors import SourceNotFound, TransientAdapterError
from docstream.ingest.base import SourceAdapter, _redact
from docstream.ingest.registry import adapter_class, create_adapter
from docstream.stream.recurrence import parse_interval

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[SourceCfg, Database], SourceAdapter]
TimerFactory = Callable[..., threading.Timer]


class SourceState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    ERROR_DISABLED = "error_disabled"
    DISABLED = "disabled"


@dataclass
class FetchResult:
    """Outcome of one trigger.

    Attributes:
        status: 'ok', 'skipped' (already running / ceiling reached), 'error'
            (transient, source stays enabled), 'disabled' (source is or was
            just disabled).
        imported: Newly persisted messages.
        fetched: Messages returned by the adapter (duplicates included).
    """

    source_id: str
    status: str
    imported: int = 0
    fetched: int = 0
    error: str | None = None

    @property
    def skipped(self) -> bool:
        return self.status == "skipped"


@dataclass
class SourceHealth:
    source_id: str
    adapter: str
    state: SourceState
    is_healthy: bool
    schedule: str | None
    last_success_at: datetime | None
    last_error: str | None
    last_error_at: datetime | None
    disabled_reason: str | None
    error_count: int
    total_imported: int
    pending_messages: int


@dataclass
class CoordinatorStats:
    total_sources: int
    running: int
    scheduled: int
    disabled: int
    max_concurrent: int


class StreamCoordinator:
    """Explicit owner of every source adapter, its timer and its run slot.

    Args:
        cfg: Loaded configuration (sources + scheduler limits).
        db: Project database.
        adapter_factory: Builds an adapter for a source (tests inject fakes).
        timer_factory: ``threading.Timer``-compatible constructor.
    """

    def __init__(
        self,
        cfg: DocstreamConfig,
        db: Database,
        *,
        adapter_factory: AdapterFactory = create_adapter,
        timer_factory: TimerFactory = threading.Timer,
    ) -> None:
        self._cfg = cfg
        self._db = db
        self._adapter_factory = adapter_factory
        self._timer_factory = timer_factory
        self._sources: dict[str, SourceCfg] = {s.id: s for s in cfg.sources}
        self._max_concurrent = max(1, cfg.scheduler.max_concurrent_sources)

        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._running: set[str] = set()
        self._slots = threading.BoundedSemaphore(self._max_concurrent)
        self._adapters: dict[str, SourceAdapter] = {}
        self._timers: dict[str, threading.Timer] = {}
        self._batch_timer: threading.Timer | None = None
        self._registered = False
        self._started = False
        self._stopping = threading.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def register_sources(self) -> None:
        """Upsert every configured source and build adapters for the enabled ones."""
        with self._db.session() as conn:
            repo = Repository(conn)
            for src in self._sources.values():
                adapter_class(src.adapter)  # unknown tags fail here, once
                repo.upsert_source(
                    SourceRecord(
                        id=src.id,
                        adapter=src.adapter,
                        config=json.dumps(_redact(src.config), default=str),
                        enabled=src.enabled,
                        schedule=src.schedule,
                    )
                )
            records = {r.id: r for r in repo.list_sources()}

        with self._lock:
            for src in self._sources.values():
                record = records.get(src.id)
                if record is not None and record.enabled and src.id not in self._adapters:
                    self._adapters[src.id] = self._adapter_factory(src, self._db)
            self._registered = True

    def _ensure_registered(self) -> None:
        if not self._registered:
            self.register_sources()

    def start(self, *, batch_job: Callable[[], Any] | None = None) -> None:
        """Register sources, initialise adapters and arm the recurrence timers.

        Args:
            batch_job: Optional callable run on ``scheduler.batch_schedule``.
        """
        self._stopping.clear()
        self.register_sources()

        for source_id, adapter in list(self._adapters.items()):
            try:
                adapter.initialize()
            except TransientAdapterError as exc:
                # Left registered; the next trigger retries initialisation.
                logger.warning("Source %s not reachable at startup: %s", source_id, exc)
                self._record_error(source_id, str(exc))
            except Exception as exc:
                logger.error("Source %s failed to initialise: %s", source_id, exc)
                self._disable(source_id, f"initialize failed: {exc}")

        self._started = True
        if not self._cfg.scheduler.enable_scheduling:
            logger.info("Scheduling disabled; sources run on demand only")
            return

        for source_id in list(self._adapters):
            schedule = self._sources[source_id].schedule
            if schedule:
                self._arm(source_id, parse_interval(schedule))

        if batch_job is not None and self._cfg.scheduler.batch_schedule:
            self._arm_batch(batch_job, parse_interval(self._cfg.scheduler.batch_schedule))

        logger.info(
            "Coordinator started: %d source(s), %d scheduled, ceiling %d",
            len(self._adapters),
            len(self._timers),
            self._max_concurrent,
        )

    def shutdown(self, timeout: float | None = None) -> None:
        """Cancel timers, wait for running cycles to finish, then clean up adapters."""
        self._stopping.set()
        self._started = False
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
            batch_timer, self._batch_timer = self._batch_timer, None
        for timer in timers:
            timer.cancel()
        if batch_timer is not None:
            batch_timer.cancel()

        wait = self._cfg.scheduler.shutdown_timeout if timeout is None else timeout
        with self._idle:
            drained = self._idle.wait_for(lambda: not self._running, timeout=wait)
        if not drained:
            logger.warning("Shutdown timed out with running sources: %s", sorted(self._running))

        with self._lock:
            adapters = list(self._adapters.values())
            self._adapters.clear()
        for adapter in adapters:
            try:
                adapter.cleanup()
            except Exception as exc:
                logger.warning("Cleanup of %r failed: %s", adapter, exc)
        logger.info("Coordinator stopped")

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def trigger(self, source_id: str, limit: int | None = None) -> FetchResult:
        """Run one fetch cycle for *source_id* on the calling thread.

        Returns a ``skipped`` result without doing anything when the source is
        already running or the concurrency ceiling is reached.

        Raises:
            SourceNotFound: If *source_id* is not configured.
        """
        if source_id not in self._sources:
            raise SourceNotFound(f"No source '{source_id}' in the configuration")
        self._ensure_registered()

        with self._lock:
            if source_id in self._running:
                logger.info("Source %s already running; trigger skipped", source_id)
                return FetchResult(source_id, "skipped", error="already running")
            if not self._slots.acquire(blocking=False):
                logger.info(
                    "Concurrency ceiling (%d) reached; trigger for %s skipped",
                    self._max_concurrent,
                    source_id,
                )
                return FetchResult(source_id, "skipped", error="concurrency ceiling reached")
            self._running.add(source_id)

        try:
            return self._run_cycle(source_id, limit)
        finally:
            with self._idle:
                self._running.discard(source_id)
                self._slots.release()
                self._idle.notify_all()

    def _run_cycle(self, source_id: str, limit: int | None) -> FetchResult:
        with self._lock:
            adapter = self._adapters.get(source_id)
        if adapter is None:
            return FetchResult(source_id, "disabled", error="source is disabled")

        batch_limit = limit or int(
            self._sources[source_id].config.get(
                "fetch_limit", self._cfg.scheduler.default_batch_size
            )
        )
        try:
            if not adapter.initialized:
                adapter.initialize()
            watermark = adapter.get_watermark()
            fetched = adapter.fetch_messages(watermark, batch_limit)
            fetched.sort(key=lambda m: (m.timestamp, m.source_message_id))

            with self._db.session() as conn:
                inserted = Repository(conn).insert_messages(
                    m.to_message(source_id) for m in fetched
                )

            newest = fetched[-1] if fetched else None
            oldest = fetched[0] if fetched else None
            if (
                newest is not None
                and watermark is not None
                and watermark.last_timestamp is not None
                and newest.timestamp < watermark.last_timestamp
            ):
                newest = None  # backfill only: the forward edge stays put
            adapter.update_watermark(
                newest.timestamp if newest else None,
                newest.source_message_id if newest else None,
                inserted,
                oldest_timestamp=oldest.timestamp if oldest else None,
                oldest_id=oldest.source_message_id if oldest else None,
            )

            with self._db.session() as conn:
                Repository(conn).record_source_success(source_id)
            logger.info(
                "Source %s: fetched %d, imported %d new", source_id, len(fetched), inserted
            )
            return FetchResult(source_id, "ok", imported=inserted, fetched=len(fetched))

        except TransientAdapterError as exc:
            logger.warning("Source %s transient failure: %s", source_id, exc)
            self._record_error(source_id, str(exc))
            return FetchResult(source_id, "error", error=str(exc))
        except Exception as exc:
            logger.exception("Source %s failed; disabling it", source_id)
            reason = f"{type(exc).__name__}: {exc}"
            self._disable(source_id, reason)
            return FetchResult(source_id, "disabled", error=reason)

    # ------------------------------------------------------------------
    # Enable / disable
    # ------------------------------------------------------------------

    def enable_source(self, source_id: str) -> None:
        """Manually re-enable a source (clears an error-disabled state)."""
        src = self._sources.get(source_id)
        if src is None:
            raise SourceNotFound(f"No source '{source_id}' in the configuration")
        self._ensure_registered()
        with self._db.session() as conn:
            Repository(conn).set_source_enabled(source_id, True)
        with self._lock:
            if source_id not in self._adapters:
                self._adapters[source_id] = self._adapter_factory(src, self._db)
            started = self._started and not self._stopping.is_set()
        if started and src.schedule and self._cfg.scheduler.enable_scheduling:
            self._arm(source_id, parse_interval(src.schedule))
        logger.info("Source %s enabled", source_id)

    def disable_source(self, source_id: str, reason: str | None = None) -> None:
        """Operator disable. With *reason*, the source is marked as error-disabled."""
        if source_id not in self._sources:
            raise SourceNotFound(f"No source '{source_id}' in the configuration")
        self._ensure_registered()
        if reason:
            self._disable(source_id, reason)
            return
        with self._db.session() as conn:
            Repository(conn).set_source_enabled(source_id, False)
        self._drop_adapter(source_id)

    def _disable(self, source_id: str, reason: str) -> None:
        with self._db.session() as conn:
            Repository(conn).disable_source(source_id, reason, utcnow())
        self._drop_adapter(source_id)

    def _drop_adapter(self, source_id: str) -> None:
        with self._lock:
            adapter = self._adapters.pop(source_id, None)
            timer = self._timers.pop(source_id, None)
        if timer is not None:
            timer.cancel()
        if adapter is not None:
            try:
                adapter.cleanup()
            except Exception as exc:
                logger.warning("Cleanup of %r failed: %s", adapter, exc)

    def _record_error(self, source_id: str, error: str) -> None:
        with self._db.session() as conn:
            Repository(conn).record_source_error(source_id, error, utcnow())

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _arm(self, source_id: str, interval: float) -> None:
        if self._stopping.is_set():
            return
        timer = self._timer_factory(interval, self._on_timer, args=(source_id, interval))
        timer.daemon = True
        with self._lock:
            previous = self._timers.get(source_id)
            self._timers[source_id] = timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def _on_timer(self, source_id: str, interval: float) -> None:
        if self._stopping.is_set():
            return
        result = self.trigger(source_id)
        if result.skipped:
            logger.info("Scheduled run of %s skipped: %s", source_id, result.error)
        with self._lock:
            still_active = source_id in self._adapters
        if still_active:
            self._arm(source_id, interval)

    def _arm_batch(self, job: Callable[[], Any], interval: float) -> None:
        if self._stopping.is_set():
            return

        def _fire() -> None:
            if self._stopping.is_set():
                return
            try:
                job()
            except Exception:
                logger.exception("Scheduled batch run failed")
            self._arm_batch(job, interval)

        timer = self._timer_factory(interval, _fire)
        timer.daemon = True
        with self._lock:
            self._batch_timer = timer
        timer.start()

    # ------------------------------------------------------------------
    # Queries (never take the run slots)
    # ------------------------------------------------------------------

    def state_of(self, source_id: str, record: SourceRecord | None = None) -> SourceState:
        with self._lock:
            running = source_id in self._running
        if running:
            return SourceState.RUNNING
        if record is None:
            with self._db.session() as conn:
                record = Repository(conn).get_source(source_id)
        if record is None or record.enabled:
            return SourceState.IDLE
        return SourceState.ERROR_DISABLED if record.error_disabled else SourceState.DISABLED

    def health(self) -> list[SourceHealth]:
        """Per-source status list: state, last success, last error, totals."""
        self._ensure_registered()
        result: list[SourceHealth] = []
        with self._db.session() as conn:
            repo = Repository(conn)
            for record in repo.list_sources():
                if record.id not in self._sources:
                    continue
                wm = repo.get_import_watermark(record.id)
                healthy = record.enabled and (
                    record.last_error_at is None
                    or (
                        record.last_success_at is not None
                        and record.last_success_at >= record.last_error_at
                    )
                )
                result.append(
                    SourceHealth(
                        source_id=record.id,
                        adapter=record.adapter,
                        state=self.state_of(record.id, record),
                        is_healthy=healthy,
                        schedule=record.schedule,
                        last_success_at=record.last_success_at,
                        last_error=record.last_error,
                        last_error_at=record.last_error_at,
                        disabled_reason=record.disabled_reason,
                        error_count=record.error_count,
                        total_imported=wm.total_imported if wm else 0,
                        pending_messages=repo.count_messages(record.id, MessageStatus.PENDING),
                    )
                )
        return result

    def stats(self) -> CoordinatorStats:
        with self._lock:
            running = len(self._running)
            scheduled = len(self._timers)
            active = len(self._adapters)
        return CoordinatorStats(
            total_sources=len(self._sources),
            running=running,
            scheduled=scheduled,
            disabled=len(self._sources) - active if self._registered else 0,
            max_concurrent=self._max_concurrent,
        )

    def is_running(self, source_id: str) -> bool:
        with self._lock:
            return source_id in self._running
