"""
Sync Pipeline Module

This module orchestrates sync runs: single-flight execution, per-resource
"since" boundaries, run bookkeeping, the last-successful-sync marker and the
downstream refresh notification.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from github_activity_sync import config
from github_activity_sync.collector import RESOURCES, CollectionSummary, Collector
from github_activity_sync.github.client import GitHubGraphQLClient
from github_activity_sync.github.nodes import format_timestamp, parse_timestamp
from github_activity_sync.hooks import notify_refresh
from github_activity_sync.models import RunStatus, RunType, SyncStrategy
from github_activity_sync.realignment import RealignmentSummary, Realigner
from github_activity_sync.tracker import RunTracker, describe_error

logger = logging.getLogger(__name__)

INCREMENTAL_KEY = "incremental"
REALIGN_KEY = "realign"


class SyncError(Exception):
    """Sync cannot start: missing configuration, bad input or a conflicting operation."""

    pass


class SyncRunFailed(Exception):
    """A started run failed. ``run_id`` names its ``sync_runs`` row; the cause is chained."""

    def __init__(self, run_id: int, error: BaseException):
        super().__init__(describe_error(error))
        self.run_id = run_id
        self.error = error


def _utcnow():
    return datetime.now(timezone.utc)


class SingleFlight:
    """
    Process-local coordinator for remote walks.

    Callers using the same key while a walk is in flight join it and receive
    its result (or its exception). Walks with different keys never overlap:
    they queue on one lock.
    """

    def __init__(self):
        self._inflight: Dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    def is_running(self, key: Optional[str] = None) -> bool:
        if key is None:
            return bool(self._inflight)
        return key in self._inflight

    async def run(self, key: str, factory: Callable[[], Awaitable[Any]]):
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._exclusive(factory))
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._forget(key, done))
        else:
            logger.info(f"Joining in-flight sync '{key}'")
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task):
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _exclusive(self, factory):
        async with self._lock:
            return await factory()


@dataclass
class SyncResult:
    run_id: int
    run_type: str
    strategy: str
    since_by_resource: Dict[str, Optional[datetime]]
    until: Optional[datetime]
    summary: CollectionSummary
    last_successful_sync_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "run_type": self.run_type,
            "strategy": self.strategy,
            "since": {key: format_timestamp(value) for key, value in self.since_by_resource.items()},
            "until": format_timestamp(self.until),
            "last_successful_sync_at": format_timestamp(self.last_successful_sync_at),
            **self.summary.to_dict(),
        }


@dataclass
class BackfillChunk:
    since: datetime
    until: datetime
    status: str
    run_id: Optional[int] = None
    error: Optional[str] = None
    result: Optional[SyncResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "since": format_timestamp(self.since),
            "until": format_timestamp(self.until),
            "status": self.status,
            "run_id": self.run_id,
            "error": self.error,
            "counts": self.result.summary.counts if self.result else None,
        }


@dataclass
class BackfillResult:
    start: datetime
    end: datetime
    chunks: List[BackfillChunk] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return all(chunk.status == RunStatus.SUCCESS.value for chunk in self.chunks)

    @property
    def failed_chunk(self) -> Optional[BackfillChunk]:
        for chunk in self.chunks:
            if chunk.status == RunStatus.FAILED.value:
                return chunk
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": format_timestamp(self.start),
            "end": format_timestamp(self.end),
            "completed": self.completed,
            "chunks": [chunk.to_dict() for chunk in self.chunks],
        }


def _day_start(value) -> datetime:
    if isinstance(value, datetime):
        value = parse_timestamp(value)
        return datetime.combine(value.date(), time.min, tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            return datetime.combine(date.fromisoformat(value.strip()), time.min, tzinfo=timezone.utc)
        except ValueError:
            parsed = parse_timestamp(value)
            if parsed is None:
                raise SyncError(f"Invalid date: {value!r}")
            return _day_start(parsed)
    raise SyncError(f"Invalid date: {value!r}")


class SyncOrchestrator:
    """
    Entry point for sync runs.

    ``client_factory`` returns an async context manager yielding a GraphQL
    client. One instance is built at startup and shared by the API and the
    scheduler so every trigger goes through the same ``SingleFlight``.
    """

    def __init__(
        self,
        store,
        client_factory: Optional[Callable] = None,
        hooks=None,
        single_flight: Optional[SingleFlight] = None,
        org: Optional[str] = None,
        sleep: Callable = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.client_factory = client_factory or GitHubGraphQLClient
        self.hooks = hooks
        self.single_flight = single_flight or SingleFlight()
        self.org = org
        self.sleep = sleep
        self.clock = clock
        self.tracker = RunTracker(store)

    @property
    def is_running(self) -> bool:
        return self.single_flight.is_running()

    def resolve_org(self) -> str:
        org = self.org or self.store.get_sync_config().org_name or config.GITHUB_ORG
        if not org:
            raise SyncError("GitHub organization is not configured. Set GITHUB_ORG.")
        return org

    def build_since_map(self) -> Dict[str, Optional[datetime]]:
        """
        Lower bound per resource: its stored high-water mark, or the last
        successful sync for resources that have none yet.
        """
        state = self.store.get_sync_state()
        fallback = self.store.get_sync_config().last_successful_sync_at
        since = {}
        for resource in RESOURCES:
            row = state.get(resource)
            mark = row.last_item_timestamp if row is not None else None
            since[resource] = mark or fallback
        return since

    async def run_incremental_sync(self, run_type: str = RunType.MANUAL.value) -> SyncResult:
        """Run (or join) an incremental sync from the stored cursors."""
        return await self.single_flight.run(
            INCREMENTAL_KEY,
            lambda: self._execute(run_type, SyncStrategy.INCREMENTAL.value),
        )

    async def run_backfill(self, start_date, end_date=None) -> BackfillResult:
        """
        Backfill ``[start_date, end_date]`` one UTC day at a time.

        Each day is its own run. The first failed day stops the backfill and
        is reported in the result instead of being raised.
        """
        start = _day_start(start_date)
        now = self.clock()
        end = _day_start(end_date) + timedelta(days=1) if end_date is not None else now
        end = min(end, now)
        if start >= end:
            raise SyncError(f"Backfill start {start.date()} must be before {end.isoformat()}")

        result = BackfillResult(start=start, end=end)
        chunk_start = start
        while chunk_start < end:
            chunk_end = min(chunk_start + timedelta(days=1), end)
            key = f"backfill:{chunk_start.isoformat()}:{chunk_end.isoformat()}"
            try:
                outcome = await self.single_flight.run(
                    key,
                    lambda since=chunk_start, until=chunk_end: self._execute(
                        RunType.BACKFILL.value, SyncStrategy.BACKFILL.value, since, until
                    ),
                )
            except SyncRunFailed as e:
                logger.error(f"Backfill chunk {chunk_start.date()} failed: {e}")
                result.chunks.append(
                    BackfillChunk(
                        since=chunk_start,
                        until=chunk_end,
                        status=RunStatus.FAILED.value,
                        run_id=e.run_id,
                        error=str(e),
                    )
                )
                break
            result.chunks.append(
                BackfillChunk(
                    since=chunk_start,
                    until=chunk_end,
                    status=RunStatus.SUCCESS.value,
                    run_id=outcome.run_id,
                    result=outcome,
                )
            )
            chunk_start = chunk_end

        logger.info(
            f"Backfill {start.date()} -> {end.isoformat()} finished "
            f"({len(result.chunks)} chunks, completed={result.completed})"
        )
        return result

    async def _execute(
        self,
        run_type: str,
        strategy: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> SyncResult:
        org = self.resolve_org()
        started_at = self.clock()
        self.store.update_sync_config(last_sync_started_at=started_at)

        if strategy == SyncStrategy.INCREMENTAL.value:
            since_by_resource = self.build_since_map()
        else:
            since_by_resource = {resource: since for resource in RESOURCES}

        run_id = self.tracker.start_run(run_type, strategy, since, until)
        try:
            async with self.client_factory() as client:
                collector = Collector(client, self.store, self.tracker, sleep=self.sleep, clock=self.clock)
                summary = await collector.collect(org, since_by_resource, until, run_id)
        except Exception as e:
            self.tracker.fail_run(run_id, e)
            self.store.update_sync_config(last_sync_completed_at=self.clock())
            logger.error(f"Sync run {run_id} for {org} failed", exc_info=True)
            notify_refresh(self.hooks, run_id, None)
            raise SyncRunFailed(run_id, e) from e

        self.tracker.complete_run(run_id)
        marker = self._next_success_marker(summary)
        self.store.update_sync_config(
            last_sync_completed_at=self.clock(),
            last_successful_sync_at=marker,
        )
        notify_refresh(self.hooks, run_id, summary.changed_ids)

        duration = (self.clock() - started_at).total_seconds()
        logger.info(f"Sync run {run_id} for {org} completed in {duration:.2f} seconds")
        return SyncResult(
            run_id=run_id,
            run_type=run_type,
            strategy=strategy,
            since_by_resource=since_by_resource,
            until=until,
            summary=summary,
            last_successful_sync_at=marker,
        )

    def _next_success_marker(self, summary: CollectionSummary) -> Optional[datetime]:
        """
        The slowest advanced resource bounds the marker, so no resource's next
        window can start past data it has not seen. It never moves backwards.
        """
        previous = self.store.get_sync_config().last_successful_sync_at
        if not summary.advanced:
            return previous
        candidate = min(summary.advanced.values())
        if previous is not None and previous >= candidate:
            return previous
        return candidate

    async def run_realignment(self, trigger: str = RunType.MANUAL.value, **options) -> RealignmentSummary:
        """
        Run (or join) a repository realignment pass under the sync lock.

        Manual passes wait for the rate limit to reset (within the wait
        timeout); automatic ones halt early instead.
        """
        options.setdefault("wait_for_rate_limit", trigger == RunType.MANUAL.value)
        return await self.single_flight.run(REALIGN_KEY, lambda: self._realign(trigger, options))

    async def _realign(self, trigger: str, options: Dict[str, Any]) -> RealignmentSummary:
        with self.tracker.resource_log(None, "realignment") as log:
            async with self.client_factory() as client:
                async with Realigner(client, self.store, sleep=self.sleep, clock=self.clock) as realigner:
                    summary = await realigner.realign(refresh_hooks=self.hooks, **options)
            log.message = (
                f"Updated {summary.updated} nodes (candidates: {summary.candidates}, "
                f"trigger: {trigger}, dry_run: {summary.dry_run})."
            )
        return summary

    def fetch_status(self, limit: int = 10) -> Dict[str, Any]:
        cfg = self.store.get_sync_config()
        state = self.store.get_sync_state()
        return {
            "org": cfg.org_name or self.org or config.GITHUB_ORG or None,
            "is_running": self.is_running,
            "auto_sync_enabled": cfg.auto_sync_enabled,
            "sync_interval_minutes": cfg.sync_interval_minutes,
            "last_sync_started_at": format_timestamp(cfg.last_sync_started_at),
            "last_sync_completed_at": format_timestamp(cfg.last_sync_completed_at),
            "last_successful_sync_at": format_timestamp(cfg.last_successful_sync_at),
            "cursors": {
                resource: format_timestamp(row.last_item_timestamp) for resource, row in state.items()
            },
            "runs": self.store.latest_sync_runs(limit=limit),
        }

    def cleanup_stuck_runs(self) -> Dict[str, int]:
        """Fail runs and logs left ``running`` by a process that died mid-sync."""
        if self.is_running:
            raise SyncError("A sync is currently running; refusing to clean up its run")
        counts = self.store.cleanup_running_sync_runs()
        if counts["runs"] or counts["logs"]:
            logger.warning(f"Marked {counts['runs']} stuck runs and {counts['logs']} logs as failed")
        return counts

    def reset_data(self, preserve_logs: bool = False):
        if self.is_running:
            raise SyncError("A sync is currently running; refusing to reset data")
        self.store.reset_data(preserve_logs=preserve_logs)
        notify_refresh(self.hooks, None, None)
