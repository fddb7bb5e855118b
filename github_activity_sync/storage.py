"""
Persistence Operations

This module wraps every write the sync engine performs. Entity writes are
``INSERT ... ON CONFLICT DO UPDATE`` statements keyed by the remote id, so
replaying the same payload any number of times converges on the same rows.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import case, delete, func, literal, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite

from github_activity_sync import config
from github_activity_sync.database import session_scope
from github_activity_sync.github.nodes import (
    PROJECT_STATUS_HISTORY_KEY,
    merge_project_status_history,
    stored_project_status_history,
    with_project_status_history,
)
from github_activity_sync.models import (
    ActivityItemCache,
    Comment,
    Issue,
    IssueProjectItem,
    IssueProjectOverride,
    IssueStatusHistory,
    ItemType,
    PullRequest,
    PullRequestIssue,
    Reaction,
    Repository,
    Review,
    ReviewRequest,
    RunStatus,
    SyncConfig,
    SyncLog,
    SyncRun,
    SyncState,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_ID = "default"
GITHUB_URL_PREFIX = "https://github.com/"
GITHUB_ORG_DISCUSSIONS_PREFIX = "https://github.com/orgs/"

# Tables wiped by reset_data, children first
ENTITY_TABLES = (
    ActivityItemCache,
    IssueProjectOverride,
    IssueStatusHistory,
    Reaction,
    Comment,
    ReviewRequest,
    Review,
    PullRequestIssue,
    PullRequest,
    IssueProjectItem,
    Issue,
    Repository,
    User,
)


@dataclass
class OwnershipCandidate:
    id: str
    repository_id: Optional[str]
    stored_repo: Optional[str]
    url: Optional[str]
    ownership_checked_at: Optional[datetime]
    ui_mismatch: bool
    project_item_ids: List[str] = field(default_factory=list)


def _ui_mismatch_clause():
    """Stored URL points at github.com but not at the stored repository."""
    return (
        Repository.name_with_owner.isnot(None)
        & (func.coalesce(Issue.url, "") != "")
        & Issue.url.ilike(GITHUB_URL_PREFIX + "%")
        & ~Issue.url.ilike(literal(GITHUB_URL_PREFIX) + Repository.name_with_owner + "/%")
        & ~Issue.url.ilike(GITHUB_ORG_DISCUSSIONS_PREFIX + "%")
    )


class SyncStore:
    """
    Idempotent persistence primitives for the activity graph and sync bookkeeping.

    Every public method runs in its own transaction.
    """

    def __init__(self, engine):
        self.engine = engine

    def _insert(self, model):
        if self.engine.dialect.name == "postgresql":
            return postgresql.insert(model)
        return sqlite.insert(model)

    def _upsert(self, session, model, values, index_elements=("id",), coalesce=()):
        stmt = self._insert(model).values(**values)
        updates = {}
        for key in values:
            if key in index_elements:
                continue
            if key in coalesce:
                updates[key] = func.coalesce(stmt.excluded[key], model.__table__.c[key])
            else:
                updates[key] = stmt.excluded[key]
        if "updated_at" in model.__table__.c and "updated_at" not in values:
            updates["updated_at"] = utcnow()
        if updates:
            stmt = stmt.on_conflict_do_update(index_elements=list(index_elements), set_=updates)
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=list(index_elements))
        session.execute(stmt)

    # Entities

    def upsert_actor(self, actor: Optional[Dict[str, Any]]) -> Optional[str]:
        if not actor or not actor.get("id"):
            return None
        with session_scope(self.engine) as session:
            self._upsert(session, User, actor)
        return actor["id"]

    def upsert_repository(self, repository: Dict[str, Any]) -> str:
        with session_scope(self.engine) as session:
            self._upsert(session, Repository, repository, coalesce=("owner_id",))
        return repository["id"]

    def upsert_issue(self, issue: Dict[str, Any], project_item_ids: Iterable[str] = ()) -> str:
        """
        Upsert an issue or discussion and remember its project item ids.

        The project status timeline kept in the stored payload is merged
        into the new one, never replaced.
        """
        with session_scope(self.engine) as session:
            previous = session.execute(select(Issue.data).where(Issue.id == issue["id"])).scalar_one_or_none()
            issue = with_project_status_history(issue, previous)
            self._upsert(session, Issue, issue, coalesce=("author_id",))
            for item_id in project_item_ids:
                self._upsert(
                    session,
                    IssueProjectItem,
                    {"issue_id": issue["id"], "project_item_id": item_id},
                    index_elements=("issue_id", "project_item_id"),
                )
        return issue["id"]

    def upsert_pull_request(self, pull_request: Dict[str, Any]) -> str:
        with session_scope(self.engine) as session:
            self._upsert(session, PullRequest, pull_request, coalesce=("author_id",))
        return pull_request["id"]

    def replace_pull_request_issues(self, pull_request_id: str, links: List[Dict[str, Any]]):
        with session_scope(self.engine) as session:
            session.execute(
                delete(PullRequestIssue).where(PullRequestIssue.pull_request_id == pull_request_id)
            )
            for link in links:
                self._upsert(
                    session,
                    PullRequestIssue,
                    dict(link, pull_request_id=pull_request_id),
                    index_elements=("pull_request_id", "issue_id"),
                )

    def upsert_review(self, review: Dict[str, Any]) -> str:
        with session_scope(self.engine) as session:
            self._upsert(session, Review, review)
        return review["id"]

    def review_exists(self, review_id: str) -> bool:
        with session_scope(self.engine) as session:
            return session.get(Review, review_id) is not None

    def upsert_review_request(self, request: Dict[str, Any]) -> str:
        with session_scope(self.engine) as session:
            self._upsert(session, ReviewRequest, request)
        return request["id"]

    def mark_review_request_removed(
        self,
        pull_request_id: str,
        reviewer_id: str,
        removed_at: datetime,
        data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Close the latest matching request made at or before ``removed_at``."""
        with session_scope(self.engine) as session:
            target = session.execute(
                select(ReviewRequest)
                .where(
                    ReviewRequest.pull_request_id == pull_request_id,
                    ReviewRequest.reviewer_id == reviewer_id,
                    ReviewRequest.requested_at <= removed_at,
                )
                .order_by(ReviewRequest.requested_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            if target is None:
                return False
            target.removed_at = removed_at
            target.removed_data = data
            return True

    def upsert_comment(self, comment: Dict[str, Any]) -> str:
        """Upsert a comment; parent references are only ever filled, never cleared."""
        if comment.get("issue_id") and comment.get("pull_request_id"):
            raise ValueError(f"Comment {comment['id']} cannot belong to an issue and a pull request")
        with session_scope(self.engine) as session:
            self._upsert(
                session,
                Comment,
                comment,
                coalesce=("issue_id", "pull_request_id", "review_id", "author_id"),
            )
        return comment["id"]

    def upsert_reaction(self, reaction: Dict[str, Any]) -> str:
        with session_scope(self.engine) as session:
            self._upsert(session, Reaction, reaction)
        return reaction["id"]

    # Sync state

    def get_sync_state(self) -> Dict[str, SyncState]:
        with session_scope(self.engine) as session:
            rows = session.execute(select(SyncState)).scalars().all()
            return {row.resource: row for row in rows}

    def advance_sync_cursor(
        self,
        resource: str,
        timestamp: Optional[datetime],
        cursor: Optional[str] = None,
    ) -> Optional[datetime]:
        """
        Move a resource's high-water mark forward and return the stored value.

        An older or missing timestamp leaves the stored mark unchanged.
        """
        with session_scope(self.engine) as session:
            state = session.get(SyncState, resource)
            if state is None:
                if timestamp is None:
                    return None
                session.add(
                    SyncState(resource=resource, last_cursor=cursor, last_item_timestamp=timestamp)
                )
                return timestamp
            if timestamp is not None and (
                state.last_item_timestamp is None or timestamp > state.last_item_timestamp
            ):
                state.last_item_timestamp = timestamp
                state.last_cursor = cursor
            return state.last_item_timestamp

    def get_sync_config(self) -> SyncConfig:
        with session_scope(self.engine) as session:
            row = session.get(SyncConfig, DEFAULT_CONFIG_ID)
            if row is None:
                row = SyncConfig(
                    id=DEFAULT_CONFIG_ID,
                    org_name=config.GITHUB_ORG or None,
                    auto_sync_enabled=False,
                    sync_interval_minutes=config.SYNC_INTERVAL_MINUTES,
                )
                session.add(row)
            return row

    def update_sync_config(self, **values) -> SyncConfig:
        self.get_sync_config()
        with session_scope(self.engine) as session:
            row = session.get(SyncConfig, DEFAULT_CONFIG_ID)
            for key, value in values.items():
                if not hasattr(SyncConfig, key):
                    raise ValueError(f"Unknown sync config field: {key}")
                setattr(row, key, value)
            return row

    # Runs and logs

    def create_sync_run(
        self,
        run_type: str,
        strategy: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        with session_scope(self.engine) as session:
            run = SyncRun(
                run_type=run_type,
                strategy=strategy,
                since=since,
                until=until,
                status=RunStatus.RUNNING.value,
                started_at=utcnow(),
            )
            session.add(run)
            session.flush()
            return run.id

    def finish_sync_run(self, run_id: int, status: str, error: Optional[str] = None):
        with session_scope(self.engine) as session:
            run = session.get(SyncRun, run_id)
            if run is None:
                raise LookupError(f"Sync run {run_id} does not exist")
            run.status = status
            run.error = error
            run.completed_at = utcnow()

    def get_sync_run(self, run_id: int) -> Optional[SyncRun]:
        with session_scope(self.engine) as session:
            return session.get(SyncRun, run_id)

    def record_sync_log(
        self,
        run_id: Optional[int],
        resource: str,
        status: str = RunStatus.RUNNING.value,
        message: Optional[str] = None,
    ) -> int:
        with session_scope(self.engine) as session:
            log = SyncLog(
                run_id=run_id,
                resource=resource,
                status=status,
                message=message,
                started_at=utcnow(),
            )
            session.add(log)
            session.flush()
            return log.id

    def finish_sync_log(self, log_id: int, status: str, message: Optional[str] = None):
        with session_scope(self.engine) as session:
            log = session.get(SyncLog, log_id)
            if log is None:
                raise LookupError(f"Sync log {log_id} does not exist")
            log.status = status
            log.message = message
            log.finished_at = utcnow()

    def get_sync_logs(self, run_id: int) -> List[SyncLog]:
        with session_scope(self.engine) as session:
            return (
                session.execute(select(SyncLog).where(SyncLog.run_id == run_id).order_by(SyncLog.id))
                .scalars()
                .all()
            )

    def cleanup_running_sync_runs(self, message: str = "Marked as failed after restart") -> Dict[str, int]:
        """Fail every run and log still marked running (left over by a dead process)."""
        now = utcnow()
        with session_scope(self.engine) as session:
            runs = session.execute(
                update(SyncRun)
                .where(SyncRun.status == RunStatus.RUNNING.value)
                .values(status=RunStatus.FAILED.value, error=message, completed_at=now, updated_at=now)
            ).rowcount
            logs = session.execute(
                update(SyncLog)
                .where(SyncLog.status == RunStatus.RUNNING.value)
                .values(status=RunStatus.FAILED.value, message=message, finished_at=now)
            ).rowcount
        return {"runs": runs or 0, "logs": logs or 0}

    def latest_sync_runs(self, limit: int = 10) -> List[Dict[str, Any]]:
        with session_scope(self.engine) as session:
            runs = (
                session.execute(select(SyncRun).order_by(SyncRun.id.desc()).limit(limit))
                .scalars()
                .all()
            )
            run_ids = [run.id for run in runs]
            logs = (
                session.execute(
                    select(SyncLog).where(SyncLog.run_id.in_(run_ids)).order_by(SyncLog.id)
                )
                .scalars()
                .all()
                if run_ids
                else []
            )
            logs_by_run = {}
            for log in logs:
                logs_by_run.setdefault(log.run_id, []).append(
                    {
                        "id": log.id,
                        "resource": log.resource,
                        "status": log.status,
                        "message": log.message,
                        "started_at": log.started_at,
                        "finished_at": log.finished_at,
                    }
                )
            return [
                {
                    "id": run.id,
                    "run_type": run.run_type,
                    "strategy": run.strategy,
                    "since": run.since,
                    "until": run.until,
                    "status": run.status,
                    "error": run.error,
                    "started_at": run.started_at,
                    "completed_at": run.completed_at,
                    "logs": logs_by_run.get(run.id, []),
                }
                for run in runs
            ]

    def reset_data(self, preserve_logs: bool = False):
        with session_scope(self.engine) as session:
            for model in ENTITY_TABLES:
                session.execute(delete(model))
            session.execute(delete(SyncState))
            if not preserve_logs:
                session.execute(delete(SyncLog))
                session.execute(delete(SyncRun))
            session.execute(
                update(SyncConfig).values(
                    last_sync_started_at=None,
                    last_sync_completed_at=None,
                    last_successful_sync_at=None,
                )
            )
        logger.info(f"Reset all synced data (preserve_logs={preserve_logs})")

    # Derived caches

    def refresh_activity_items(self, ids: Optional[Iterable[str]] = None) -> int:
        """Rebuild ``activity_items`` rows from issues (all rows when ``ids`` is None)."""
        with session_scope(self.engine) as session:
            query = select(Issue, Repository.name_with_owner).join(
                Repository, Repository.id == Issue.repository_id, isouter=True
            )
            if ids is not None:
                ids = list(ids)
                if not ids:
                    return 0
                query = query.where(Issue.id.in_(ids))
                session.execute(delete(ActivityItemCache).where(ActivityItemCache.item_id.in_(ids)))
            else:
                session.execute(delete(ActivityItemCache))
            count = 0
            for issue, repository in session.execute(query).all():
                session.add(
                    ActivityItemCache(
                        item_id=issue.id,
                        payload={
                            "number": issue.number,
                            "type": issue.item_type,
                            "title": issue.title,
                            "state": issue.state,
                            "url": issue.url,
                            "repository": repository,
                        },
                        refreshed_at=utcnow(),
                    )
                )
                count += 1
            return count

    # Realignment support

    def fetch_ownership_candidates(
        self,
        limit: int,
        ids: Optional[Iterable[str]] = None,
        recheck_days: int = config.OWNERSHIP_RECHECK_DAYS,
    ) -> List[OwnershipCandidate]:
        """
        Issues whose URL disagrees with their stored repository, or whose
        ownership was not verified within ``recheck_days``. Mismatches come
        first, then never-checked rows, then the most recently updated.
        """
        mismatch = _ui_mismatch_clause()
        query = select(
            Issue.id,
            Issue.repository_id,
            Repository.name_with_owner,
            Issue.url,
            Issue.ownership_checked_at,
            case((mismatch, True), else_=False).label("ui_mismatch"),
        ).join(Repository, Repository.id == Issue.repository_id, isouter=True)

        if ids is not None:
            unique_ids = list(dict.fromkeys(i for i in ids if i))
            if not unique_ids:
                return []
            query = query.where(Issue.id.in_(unique_ids))
        else:
            stale_before = utcnow() - timedelta(days=recheck_days)
            query = query.where(
                or_(
                    mismatch,
                    Issue.ownership_checked_at.is_(None),
                    Issue.ownership_checked_at < stale_before,
                )
            ).order_by(
                case((mismatch, 0), else_=1),
                Issue.ownership_checked_at.asc().nulls_first(),
                Issue.github_updated_at.desc().nulls_last(),
            )
        query = query.limit(limit)

        with session_scope(self.engine) as session:
            rows = session.execute(query).all()
            candidate_ids = [row[0] for row in rows]
            items = {}
            if candidate_ids:
                for issue_id, item_id in session.execute(
                    select(IssueProjectItem.issue_id, IssueProjectItem.project_item_id)
                    .where(IssueProjectItem.issue_id.in_(candidate_ids))
                    .order_by(IssueProjectItem.project_item_id)
                ).all():
                    items.setdefault(issue_id, []).append(item_id)
            return [
                OwnershipCandidate(
                    id=row[0],
                    repository_id=row[1],
                    stored_repo=row[2],
                    url=row[3],
                    ownership_checked_at=row[4],
                    ui_mismatch=bool(row[5]),
                    project_item_ids=items.get(row[0], []),
                )
                for row in rows
            ]

    def mark_ownership_checked(self, ids: Iterable[str], checked_at: Optional[datetime] = None):
        unique_ids = list(dict.fromkeys(i for i in ids if i))
        if not unique_ids:
            return
        with session_scope(self.engine) as session:
            session.execute(
                update(Issue)
                .where(Issue.id.in_(unique_ids))
                .values(ownership_checked_at=checked_at or utcnow())
            )

    def find_issue_id_by_project_items(
        self, project_item_ids: Iterable[str], exclude_id: Optional[str] = None
    ) -> Optional[str]:
        """Another issue sharing one of the given project item ids, most recent first."""
        item_ids = list(dict.fromkeys(i for i in project_item_ids if i))
        if not item_ids:
            return None
        query = (
            select(Issue.id)
            .join(IssueProjectItem, IssueProjectItem.issue_id == Issue.id)
            .where(IssueProjectItem.project_item_id.in_(item_ids))
            .order_by(Issue.github_updated_at.desc().nulls_last())
            .limit(1)
        )
        if exclude_id:
            query = query.where(Issue.id != exclude_id)
        with session_scope(self.engine) as session:
            return session.execute(query).scalar_one_or_none()

    def get_issue(self, issue_id: str) -> Optional[Issue]:
        with session_scope(self.engine) as session:
            return session.get(Issue, issue_id)

    def migrate_issue_identity(self, old_id: str, new_id: str) -> bool:
        """
        Re-point every local reference from ``old_id`` to ``new_id`` in one transaction.

        When ``new_id`` already exists its rows win: conflicting rows of the old
        issue are dropped, then the old issue row is deleted. The old issue's project
        status timeline is merged into the surviving payload. Caches keyed by
        the new id are always dropped so they get rebuilt.
        """
        if not old_id or not new_id or old_id == new_id:
            return False

        with session_scope(self.engine) as session:
            old_issue = session.get(Issue, old_id)
            target = session.get(Issue, new_id)
            target_exists = target is not None

            if not target_exists and old_issue is not None:
                values = {
                    column.name: getattr(old_issue, column.key)
                    for column in Issue.__table__.columns
                }
                values["id"] = new_id
                session.execute(self._insert(Issue).values(**values))
            elif target_exists and old_issue is not None:
                old_history = stored_project_status_history(old_issue.data)
                if old_history:
                    history = merge_project_status_history(
                        stored_project_status_history(target.data), old_history
                    )
                    target.data = dict(target.data or {}, **{PROJECT_STATUS_HISTORY_KEY: history})

            session.execute(update(Comment).where(Comment.issue_id == old_id).values(issue_id=new_id))
            session.execute(
                update(IssueStatusHistory)
                .where(IssueStatusHistory.issue_id == old_id)
                .values(issue_id=new_id)
            )
            session.execute(
                update(Reaction)
                .where(
                    Reaction.subject_id == old_id,
                    Reaction.subject_type.in_((ItemType.ISSUE.value, ItemType.DISCUSSION.value)),
                )
                .values(subject_id=new_id)
            )

            # Composite keys: rows already present under the new id win
            overridden_fields = select(IssueProjectOverride.field_name).where(
                IssueProjectOverride.issue_id == new_id
            )
            session.execute(
                delete(IssueProjectOverride).where(
                    IssueProjectOverride.issue_id == old_id,
                    IssueProjectOverride.field_name.in_(overridden_fields.scalar_subquery()),
                )
            )
            session.execute(
                update(IssueProjectOverride)
                .where(IssueProjectOverride.issue_id == old_id)
                .values(issue_id=new_id)
            )

            linked_pull_requests = select(PullRequestIssue.pull_request_id).where(
                PullRequestIssue.issue_id == new_id
            )
            session.execute(
                delete(PullRequestIssue).where(
                    PullRequestIssue.issue_id == old_id,
                    PullRequestIssue.pull_request_id.in_(linked_pull_requests.scalar_subquery()),
                )
            )
            session.execute(
                update(PullRequestIssue)
                .where(PullRequestIssue.issue_id == old_id)
                .values(issue_id=new_id)
            )

            known_items = select(IssueProjectItem.project_item_id).where(
                IssueProjectItem.issue_id == new_id
            )
            session.execute(
                delete(IssueProjectItem).where(
                    IssueProjectItem.issue_id == old_id,
                    IssueProjectItem.project_item_id.in_(known_items.scalar_subquery()),
                )
            )
            session.execute(
                update(IssueProjectItem)
                .where(IssueProjectItem.issue_id == old_id)
                .values(issue_id=new_id)
            )

            session.execute(delete(ActivityItemCache).where(ActivityItemCache.item_id == new_id))
            session.execute(
                update(ActivityItemCache)
                .where(ActivityItemCache.item_id == old_id)
                .values(item_id=new_id)
            )

            if old_issue is not None:
                session.expunge(old_issue)
            session.execute(delete(Issue).where(Issue.id == old_id))

        logger.info(f"Migrated issue id {old_id} -> {new_id} (target existed: {target_exists})")
        return True
