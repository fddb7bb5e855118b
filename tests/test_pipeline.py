"""Tests for the sync orchestrator: single flight, markers, backfill and hooks."""

import asyncio
from datetime import date

import pytest
from sqlalchemy import func, select

from github_activity_sync.database import session_scope
from github_activity_sync.github.client import GraphQLRequestError
from github_activity_sync.hooks import ActivityCacheHooks, notify_refresh
from github_activity_sync.models import ActivityItemCache, Comment, SyncLog, SyncRun
from github_activity_sync.pipeline import SingleFlight, SyncError, SyncOrchestrator, SyncRunFailed

from conftest import ORG, graphql_error_result, make_comment, make_issue, make_repo, ts


class RecordingHooks:
    """Records refresh calls and the run status visible at call time."""

    def __init__(self, store):
        self.store = store
        self.calls = []
        self.statuses = []
        self.attention = []

    def refresh_caches(self, run_id, changed_ids):
        self.calls.append((run_id, changed_ids))
        if run_id is not None:
            self.statuses.append(self.store.get_sync_run(run_id).status)

    def recompute_attention(self, changed_ids):
        self.attention.append(changed_ids)


class FailingHooks:
    def refresh_caches(self, run_id, changed_ids):
        raise RuntimeError("cache offline")

    def recompute_attention(self, changed_ids):
        raise RuntimeError("badges offline")


def run_count(store):
    with session_scope(store.engine) as session:
        return session.execute(select(func.count()).select_from(SyncRun)).scalar_one()


@pytest.fixture
def hooks(store):
    return RecordingHooks(store)


@pytest.fixture
def small_graph(graph):
    repo = graph.add_repository(make_repo("widgets", updated="2024-03-01T08:00:00Z"))
    key = repo["nameWithOwner"]
    graph.issues[key] = [make_issue(repo, 1, "2024-03-01T10:00:00Z")]
    graph.comments[("issue", key, 1)] = [make_comment("C_1", "2024-03-01T09:00:00Z")]
    return graph


@pytest.fixture
def orchestrator(store, small_graph, hooks, sleep):
    return SyncOrchestrator(store, client_factory=lambda: small_graph, hooks=hooks, org=ORG, sleep=sleep)


class TestIncrementalSync:
    @pytest.mark.asyncio
    async def test_success_records_run_marker_and_notifies(self, orchestrator, store, hooks):
        result = await orchestrator.run_incremental_sync()

        run = store.get_sync_run(result.run_id)
        assert run.status == "success"
        assert run.run_type == "manual"
        assert run.strategy == "incremental"

        assert result.summary.advanced == {
            "repositories": ts("2024-03-01T08:00:00Z"),
            "issues": ts("2024-03-01T10:00:00Z"),
            "comments": ts("2024-03-01T09:00:00Z"),
        }
        cfg = store.get_sync_config()
        assert cfg.last_successful_sync_at == ts("2024-03-01T08:00:00Z")
        assert result.last_successful_sync_at == cfg.last_successful_sync_at
        assert cfg.last_sync_started_at is not None
        assert cfg.last_sync_completed_at is not None

        assert hooks.calls == [(result.run_id, ["I_widgets_1"])]
        assert hooks.statuses == ["success"]
        assert hooks.attention == [["I_widgets_1"]]

    @pytest.mark.asyncio
    async def test_next_run_starts_from_stored_cursors(self, orchestrator, store):
        await orchestrator.run_incremental_sync()

        since = orchestrator.build_since_map()

        assert since["issues"] == ts("2024-03-01T10:00:00Z")
        assert since["comments"] == ts("2024-03-01T09:00:00Z")
        # No discussions seen yet: falls back to the last successful sync
        assert since["discussions"] == ts("2024-03-01T08:00:00Z")

    @pytest.mark.asyncio
    async def test_marker_never_moves_backwards(self, orchestrator, store):
        store.update_sync_config(last_successful_sync_at=ts("2024-06-01T00:00:00Z"))

        result = await orchestrator.run_incremental_sync()

        assert result.last_successful_sync_at == ts("2024-06-01T00:00:00Z")
        assert store.get_sync_config().last_successful_sync_at == ts("2024-06-01T00:00:00Z")

    @pytest.mark.asyncio
    async def test_failure_marks_run_and_keeps_marker(self, orchestrator, store, small_graph, hooks):
        small_graph.script["RepositoryIssues"] = [graphql_error_result("boom")]

        with pytest.raises(SyncRunFailed) as excinfo:
            await orchestrator.run_incremental_sync()

        assert isinstance(excinfo.value.__cause__, GraphQLRequestError)
        assert str(excinfo.value) == "boom"
        run_id = excinfo.value.run_id
        run = store.get_sync_run(run_id)
        assert run.status == "failed"
        assert run.error == "boom"
        cfg = store.get_sync_config()
        assert cfg.last_successful_sync_at is None
        assert cfg.last_sync_completed_at is not None
        assert hooks.calls == [(run_id, None)]
        assert hooks.statuses == ["failed"]
        assert not orchestrator.is_running

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_walk(self, orchestrator, store, small_graph):
        first, second = await asyncio.gather(
            orchestrator.run_incremental_sync(),
            orchestrator.run_incremental_sync("automatic"),
        )

        assert first is second
        assert len(small_graph.calls_for("OrganizationRepositories")) == 1
        assert run_count(store) == 1

    @pytest.mark.asyncio
    async def test_missing_org_is_rejected(self, store, small_graph):
        orchestrator = SyncOrchestrator(store, client_factory=lambda: small_graph)

        with pytest.raises(SyncError):
            await orchestrator.run_incremental_sync()
        assert run_count(store) == 0

    @pytest.mark.asyncio
    async def test_org_from_stored_config(self, store, small_graph):
        store.update_sync_config(org_name=ORG)
        orchestrator = SyncOrchestrator(store, client_factory=lambda: small_graph)

        result = await orchestrator.run_incremental_sync()

        assert result.summary.repositories_processed == 1
        assert small_graph.calls_for("OrganizationRepositories")[0]["login"] == ORG

    @pytest.mark.asyncio
    async def test_hook_failures_do_not_fail_the_run(self, store, small_graph):
        orchestrator = SyncOrchestrator(store, client_factory=lambda: small_graph, hooks=FailingHooks(), org=ORG)

        result = await orchestrator.run_incremental_sync()

        assert store.get_sync_run(result.run_id).status == "success"

    @pytest.mark.asyncio
    async def test_activity_cache_hooks_refresh_changed_items(self, store, small_graph):
        orchestrator = SyncOrchestrator(
            store, client_factory=lambda: small_graph, hooks=ActivityCacheHooks(store), org=ORG
        )

        await orchestrator.run_incremental_sync()

        with session_scope(store.engine) as session:
            cached = session.execute(select(ActivityItemCache)).scalars().all()
        assert [row.item_id for row in cached] == ["I_widgets_1"]
        assert cached[0].payload["repository"] == "acme/widgets"


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_different_keys_never_overlap(self):
        flight = SingleFlight()
        active = []
        peak = []

        async def walk():
            active.append(1)
            peak.append(len(active))
            await asyncio.sleep(0)
            active.pop()
            return len(peak)

        await asyncio.gather(flight.run("a", walk), flight.run("b", walk))

        assert max(peak) == 1
        assert not flight.is_running()

    @pytest.mark.asyncio
    async def test_joined_callers_see_the_same_error(self):
        flight = SingleFlight()
        calls = []

        async def walk():
            calls.append(1)
            await asyncio.sleep(0)
            raise RuntimeError("walk failed")

        results = await asyncio.gather(flight.run("a", walk), flight.run("a", walk), return_exceptions=True)

        assert len(calls) == 1
        assert all(isinstance(r, RuntimeError) for r in results)

    @pytest.mark.asyncio
    async def test_maintenance_refused_while_running(self, orchestrator):
        release = asyncio.Event()

        async def blocker():
            await release.wait()

        task = asyncio.ensure_future(orchestrator.single_flight.run("held", blocker))
        await asyncio.sleep(0)

        assert orchestrator.is_running
        assert orchestrator.single_flight.is_running("held")
        with pytest.raises(SyncError):
            orchestrator.cleanup_stuck_runs()
        with pytest.raises(SyncError):
            orchestrator.reset_data()

        release.set()
        await task
        assert not orchestrator.is_running


class TestBackfill:
    @pytest.fixture
    def backfiller(self, store, graph, hooks, sleep):
        graph.add_repository(make_repo("widgets"))
        return SyncOrchestrator(
            store,
            client_factory=lambda: graph,
            hooks=hooks,
            org=ORG,
            sleep=sleep,
            clock=lambda: ts("2024-03-03T12:00:00Z"),
        )

    @pytest.mark.asyncio
    async def test_one_run_per_day(self, backfiller, store):
        result = await backfiller.run_backfill(date(2024, 3, 1), date(2024, 3, 2))

        assert result.completed
        assert [(c.since, c.until) for c in result.chunks] == [
            (ts("2024-03-01T00:00:00Z"), ts("2024-03-02T00:00:00Z")),
            (ts("2024-03-02T00:00:00Z"), ts("2024-03-03T00:00:00Z")),
        ]
        run = store.get_sync_run(result.chunks[0].run_id)
        assert (run.run_type, run.strategy) == ("backfill", "backfill")
        assert (run.since, run.until) == (ts("2024-03-01T00:00:00Z"), ts("2024-03-02T00:00:00Z"))

    @pytest.mark.asyncio
    async def test_open_end_is_clamped_to_now(self, backfiller):
        result = await backfiller.run_backfill("2024-03-03")

        assert [(c.since, c.until) for c in result.chunks] == [
            (ts("2024-03-03T00:00:00Z"), ts("2024-03-03T12:00:00Z")),
        ]

    @pytest.mark.asyncio
    async def test_first_failed_day_stops_the_backfill(self, backfiller, store, graph):
        graph.script["OrganizationRepositories"] = [None, graphql_error_result("day two broke")]

        result = await backfiller.run_backfill(date(2024, 3, 1))

        assert not result.completed
        assert [c.status for c in result.chunks] == ["success", "failed"]
        failed = result.failed_chunk
        assert failed.since == ts("2024-03-02T00:00:00Z")
        assert failed.error == "day two broke"
        assert store.get_sync_run(failed.run_id).status == "failed"
        assert run_count(store) == 2
        assert result.to_dict()["completed"] is False

    @pytest.mark.asyncio
    async def test_edited_comment_does_not_hide_later_comments(self, store, graph, sleep):
        repo = graph.add_repository(make_repo("widgets"))
        key = repo["nameWithOwner"]
        graph.issues[key] = [
            make_issue(repo, 1, "2024-03-01T10:00:00Z"),
            make_issue(repo, 2, "2024-03-10T00:00:00Z"),
        ]
        graph.comments[("issue", key, 1)] = [
            make_comment("C1", "2024-03-01T09:00:00Z", updated="2024-03-20T00:00:00Z")
        ]
        graph.comments[("issue", key, 2)] = [make_comment("C2", "2024-03-10T00:00:00Z")]
        orchestrator = SyncOrchestrator(
            store, client_factory=lambda: graph, org=ORG, sleep=sleep,
            clock=lambda: ts("2024-03-21T00:00:00Z"),
        )

        await orchestrator.run_backfill(date(2024, 3, 1), date(2024, 3, 1))

        assert store.get_sync_state()["comments"].last_item_timestamp < ts("2024-03-02T00:00:00Z")

        await orchestrator.run_incremental_sync()

        with session_scope(store.engine) as session:
            stored = sorted(session.execute(select(Comment.id)).scalars().all())
        assert stored == ["C1", "C2"]

    @pytest.mark.asyncio
    async def test_invalid_ranges(self, backfiller):
        with pytest.raises(SyncError):
            await backfiller.run_backfill(date(2024, 3, 5), date(2024, 3, 1))
        with pytest.raises(SyncError):
            await backfiller.run_backfill(date(2024, 3, 4))
        with pytest.raises(SyncError):
            await backfiller.run_backfill("not-a-date")


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_status_lists_runs_and_cursors(self, orchestrator):
        result = await orchestrator.run_incremental_sync()

        status = orchestrator.fetch_status()

        assert status["org"] == ORG
        assert status["is_running"] is False
        assert status["cursors"]["issues"] == "2024-03-01T10:00:00Z"
        assert status["runs"][0]["id"] == result.run_id
        assert status["runs"][0]["status"] == "success"
        assert {log["resource"] for log in status["runs"][0]["logs"]} >= {"repositories", "issues"}

    def test_cleanup_and_reset(self, orchestrator, store, hooks):
        store.create_sync_run("automatic", "incremental")

        assert orchestrator.cleanup_stuck_runs() == {"runs": 1, "logs": 0}

        orchestrator.reset_data()
        assert run_count(store) == 0
        assert hooks.calls == [(None, None)]

    @pytest.mark.asyncio
    async def test_realignment_runs_under_a_log(self, orchestrator, store):
        summary = await orchestrator.run_realignment(dry_run=True)

        assert summary.candidates == 0
        with session_scope(store.engine) as session:
            logs = session.execute(select(SyncLog).where(SyncLog.resource == "realignment")).scalars().all()
        assert [(log.run_id, log.status) for log in logs] == [(None, "success")]


def test_notify_refresh_without_hooks_is_a_no_op():
    notify_refresh(None, 1, ["a"])
