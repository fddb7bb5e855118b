"""
Database Models

This module defines the relational layout of the ingested activity graph and
the sync bookkeeping tables. Every GitHub entity is keyed by its remote node id
and keeps the original payload in ``data``.
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Stores naive UTC datetimes and always returns aware ones."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class ItemType(str, enum.Enum):
    """Kind of row stored in the ``issues`` table."""

    ISSUE = "issue"
    DISCUSSION = "discussion"


class RunStatus(str, enum.Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class RunType(str, enum.Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"
    BACKFILL = "backfill"


class SyncStrategy(str, enum.Enum):
    INCREMENTAL = "incremental"
    BACKFILL = "backfill"


class User(Base):
    """GitHub actor (user, organization, bot or mannequin)."""

    __tablename__ = "users"

    id = Column(String, primary_key=True)
    login = Column(String, index=True)
    name = Column(String)
    avatar_url = Column(String)
    github_created_at = Column(UTCDateTime)
    github_updated_at = Column(UTCDateTime)
    data = Column(JSON)
    inserted_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<User(id={self.id}, login={self.login})>"


class Repository(Base):
    __tablename__ = "repositories"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    name_with_owner = Column(String, nullable=False, index=True)
    owner_id = Column(String, ForeignKey("users.id"))
    url = Column(String)
    is_private = Column(Boolean)
    github_created_at = Column(UTCDateTime)
    github_updated_at = Column(UTCDateTime)
    data = Column(JSON)
    inserted_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Repository(id={self.id}, name_with_owner={self.name_with_owner})>"


class Issue(Base):
    """Issue or discussion, told apart by ``item_type``."""

    __tablename__ = "issues"

    id = Column(String, primary_key=True)
    number = Column(Integer, nullable=False)
    repository_id = Column(String, ForeignKey("repositories.id"), nullable=False)
    author_id = Column(String, ForeignKey("users.id"))
    item_type = Column(String, nullable=False, default=ItemType.ISSUE.value)
    title = Column(Text)
    state = Column(String)
    url = Column(String)
    github_created_at = Column(UTCDateTime)
    github_updated_at = Column(UTCDateTime, index=True)
    github_closed_at = Column(UTCDateTime)
    ownership_checked_at = Column(UTCDateTime)
    data = Column(JSON)
    inserted_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (Index("ix_issues_repository_number", "repository_id", "number"),)

    def __repr__(self):
        return f"<Issue(id={self.id}, type={self.item_type}, number={self.number})>"


class IssueProjectItem(Base):
    """Project board item attached to an issue, kept as a durable cross-reference."""

    __tablename__ = "issue_project_items"

    issue_id = Column(String, ForeignKey("issues.id"), primary_key=True)
    project_item_id = Column(String, primary_key=True, index=True)


class PullRequest(Base):
    __tablename__ = "pull_requests"

    id = Column(String, primary_key=True)
    number = Column(Integer, nullable=False)
    repository_id = Column(String, ForeignKey("repositories.id"), nullable=False)
    author_id = Column(String, ForeignKey("users.id"))
    title = Column(Text)
    state = Column(String)
    merged = Column(Boolean)
    github_created_at = Column(UTCDateTime)
    github_updated_at = Column(UTCDateTime, index=True)
    github_closed_at = Column(UTCDateTime)
    github_merged_at = Column(UTCDateTime)
    data = Column(JSON)
    inserted_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<PullRequest(id={self.id}, number={self.number})>"


class PullRequestIssue(Base):
    """Issue a pull request closes or references."""

    __tablename__ = "pull_request_issues"

    pull_request_id = Column(String, ForeignKey("pull_requests.id"), primary_key=True)
    issue_id = Column(String, primary_key=True, index=True)
    issue_number = Column(Integer)
    issue_title = Column(Text)
    issue_state = Column(String)
    issue_url = Column(String)
    issue_repository = Column(String)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class Review(Base):
    __tablename__ = "reviews"

    id = Column(String, primary_key=True)
    pull_request_id = Column(String, ForeignKey("pull_requests.id"), nullable=False)
    author_id = Column(String, ForeignKey("users.id"))
    state = Column(String)
    github_submitted_at = Column(UTCDateTime)
    data = Column(JSON)
    inserted_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class ReviewRequest(Base):
    __tablename__ = "review_requests"

    id = Column(String, primary_key=True)
    pull_request_id = Column(String, ForeignKey("pull_requests.id"), nullable=False)
    reviewer_id = Column(String, ForeignKey("users.id"))
    requested_at = Column(UTCDateTime, nullable=False)
    removed_at = Column(UTCDateTime)
    data = Column(JSON)
    removed_data = Column(JSON)
    inserted_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class Comment(Base):
    """Comment on an issue/discussion or a pull request (never both)."""

    __tablename__ = "comments"

    id = Column(String, primary_key=True)
    issue_id = Column(String, ForeignKey("issues.id"), index=True)
    pull_request_id = Column(String, ForeignKey("pull_requests.id"), index=True)
    review_id = Column(String, ForeignKey("reviews.id"))
    author_id = Column(String, ForeignKey("users.id"))
    github_created_at = Column(UTCDateTime)
    github_updated_at = Column(UTCDateTime)
    data = Column(JSON)
    inserted_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class Reaction(Base):
    __tablename__ = "reactions"

    id = Column(String, primary_key=True)
    subject_type = Column(String, nullable=False)
    subject_id = Column(String, nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"))
    content = Column(String)
    github_created_at = Column(UTCDateTime)
    data = Column(JSON)
    inserted_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


# Locally accumulated per-issue state, written by dashboard collaborators.
# Realignment re-points these rows when an issue changes identity.


class IssueStatusHistory(Base):
    __tablename__ = "activity_issue_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    issue_id = Column(String, ForeignKey("issues.id"), nullable=False, index=True)
    status = Column(String, nullable=False)
    source = Column(String)
    occurred_at = Column(UTCDateTime, default=utcnow)


class IssueProjectOverride(Base):
    __tablename__ = "activity_issue_project_overrides"

    issue_id = Column(String, ForeignKey("issues.id"), primary_key=True)
    field_name = Column(String, primary_key=True)
    value = Column(Text)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class ActivityItemCache(Base):
    """Derived snapshot row, rebuilt by the cache refresher."""

    __tablename__ = "activity_items"

    item_id = Column(String, primary_key=True)
    payload = Column(JSON)
    refreshed_at = Column(UTCDateTime, default=utcnow)


# Sync bookkeeping


class SyncState(Base):
    """High-water mark per resource kind."""

    __tablename__ = "sync_state"

    resource = Column(String, primary_key=True)
    last_cursor = Column(String)
    last_item_timestamp = Column(UTCDateTime)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class SyncRun(Base):
    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_type = Column(String, nullable=False)
    strategy = Column(String, nullable=False)
    since = Column(UTCDateTime)
    until = Column(UTCDateTime)
    status = Column(String, nullable=False, default=RunStatus.RUNNING.value)
    error = Column(Text)
    started_at = Column(UTCDateTime, default=utcnow)
    completed_at = Column(UTCDateTime)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<SyncRun(id={self.id}, type={self.run_type}, status={self.status})>"


class SyncLog(Base):
    __tablename__ = "sync_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Integer, ForeignKey("sync_runs.id"), index=True)
    resource = Column(String, nullable=False)
    status = Column(String, nullable=False)
    message = Column(Text)
    started_at = Column(UTCDateTime, default=utcnow)
    finished_at = Column(UTCDateTime)


class SyncConfig(Base):
    __tablename__ = "sync_config"

    id = Column(String, primary_key=True, default="default")
    org_name = Column(String)
    auto_sync_enabled = Column(Boolean, nullable=False, default=False)
    sync_interval_minutes = Column(Integer)
    last_sync_started_at = Column(UTCDateTime)
    last_sync_completed_at = Column(UTCDateTime)
    last_successful_sync_at = Column(UTCDateTime)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
