"""
Collector Module

This module walks an organization's activity graph through the GraphQL API
and writes every discovered entity through the store:

    organization -> repositories -> {issues, discussions, pull requests}
                 -> {comments, reviews, review threads, reactions}

Entities are written in dependency order (actor, repository, item, children)
as they are discovered, so an interrupted walk leaves a consistent prefix.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from github_activity_sync import config
from github_activity_sync.github import queries
from github_activity_sync.github.client import RateLimitExceeded
from github_activity_sync.github.nodes import (
    AFTER_UPPER_BOUND,
    INCLUDE,
    TimeWindow,
    connection_nodes,
    format_timestamp,
    item_type_of,
    max_timestamp,
    page_info,
    parse_timestamp,
    project_item_ids,
    to_actor,
    to_issue,
    to_repository,
)
from github_activity_sync.models import ItemType
from github_activity_sync.tracker import RunTracker

logger = logging.getLogger(__name__)

RESOURCES = ("repositories", "issues", "discussions", "pull_requests", "reviews", "comments")

BACKOFF_FACTOR = 2

COMMENT_DOCUMENTS = {
    "issue": (queries.ISSUE_COMMENTS, "issue"),
    "discussion": (queries.DISCUSSION_COMMENTS, "discussion"),
    "pull_request": (queries.PULL_REQUEST_COMMENTS, "pullRequest"),
}


@dataclass
class CollectionSummary:
    """Result of one walk."""

    repositories_processed: int = 0
    counts: Dict[str, int] = field(default_factory=lambda: {
        "issues": 0,
        "discussions": 0,
        "pull_requests": 0,
        "reviews": 0,
        "review_requests": 0,
        "comments": 0,
        "reactions": 0,
    })
    # Highest timestamp observed per resource during this walk
    latest: Dict[str, Optional[datetime]] = field(
        default_factory=lambda: {resource: None for resource in RESOURCES}
    )
    # Resources whose stored high-water mark moved forward, with the new mark
    advanced: Dict[str, datetime] = field(default_factory=dict)
    changed_ids: Set[str] = field(default_factory=set)

    def observe(self, resource: str, timestamp):
        self.latest[resource] = max_timestamp(self.latest[resource], timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repositories_processed": self.repositories_processed,
            "counts": dict(self.counts),
            "latest": {key: format_timestamp(value) for key, value in self.latest.items()},
        }


def _utcnow():
    return datetime.now(timezone.utc)


class Collector:
    """
    Walks the remote graph and persists everything it finds.

    ``sleep`` and ``clock`` are injectable so rate-limit waits can be observed
    without real delays.
    """

    def __init__(
        self,
        client,
        store,
        tracker: Optional[RunTracker] = None,
        sleep: Callable = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
        page_size: int = config.PAGE_SIZE,
        max_retries: int = config.MAX_RETRY_ATTEMPTS,
        max_rate_limit_retries: int = config.MAX_RATE_LIMIT_RETRIES,
        base_retry_delay: float = config.BASE_RETRY_DELAY_SECONDS,
        default_rate_limit_delay: float = config.RATE_LIMIT_DEFAULT_BACKOFF_SECONDS,
        rate_limit_wait_ceiling: float = config.RATE_LIMIT_WAIT_CEILING_SECONDS,
    ):
        self.client = client
        self.store = store
        self.tracker = tracker or RunTracker(store)
        self.sleep = sleep
        self.clock = clock
        self.page_size = page_size
        self.max_retries = max_retries
        self.max_rate_limit_retries = max_rate_limit_retries
        self.base_retry_delay = base_retry_delay
        self.default_rate_limit_delay = default_rate_limit_delay
        self.rate_limit_wait_ceiling = rate_limit_wait_ceiling
        self._paused_until: Optional[datetime] = None
        self._review_cache: Set[str] = set()

    # Requests

    async def _wait_for_budget(self, context: str):
        if self._paused_until is None:
            return
        wait = (self._paused_until - self.clock()).total_seconds()
        reset_at = self._paused_until
        self._paused_until = None
        if wait <= 0:
            return
        if wait > self.rate_limit_wait_ceiling:
            raise RateLimitExceeded(retry_after=wait, reset_at=reset_at)
        logger.warning(f"Rate limit budget exhausted before {context}. Waiting {wait:.0f}s for reset.")
        await self.sleep(wait)

    async def request_with_retry(
        self,
        document: str,
        variables: Dict[str, Any],
        context: str = "request",
        allow_not_found: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """
        Execute a query, waiting out throttling and retrying transient failures.

        Throttled responses are retried after the hinted interval (or the
        default backoff) up to ``max_rate_limit_retries`` times; a hint beyond
        the wait ceiling is fatal. 5xx and transport failures are retried
        ``max_retries`` times with exponential backoff. With
        ``allow_not_found`` a ``NOT_FOUND`` answer returns None.
        """
        attempt = 0
        delay = self.base_retry_delay
        rate_limit_retries = 0

        while True:
            await self._wait_for_budget(context)
            result = await self.client.execute(document, variables)

            rate_limit = result.rate_limit
            if result.ok:
                if rate_limit is not None and rate_limit.exhausted and rate_limit.reset_at:
                    self._paused_until = rate_limit.reset_at
                return result.data

            if result.is_rate_limited:
                rate_limit_retries += 1
                if rate_limit_retries > self.max_rate_limit_retries:
                    logger.error(f"Rate limit retries exhausted for {context}")
                    result.raise_for_error()
                wait = result.retry_after()
                if wait is None:
                    wait = self.default_rate_limit_delay
                if wait > self.rate_limit_wait_ceiling:
                    logger.error(
                        f"Rate limit for {context} resets in {wait:.0f}s, "
                        f"beyond the {self.rate_limit_wait_ceiling:.0f}s ceiling"
                    )
                    result.raise_for_error()
                logger.warning(
                    f"Rate limit reached for {context}. Waiting {wait:.0f}s before retrying "
                    f"({rate_limit_retries}/{self.max_rate_limit_retries})."
                )
                await self.sleep(wait)
                continue

            if allow_not_found and result.is_not_found:
                return None

            if result.is_retryable and attempt < self.max_retries - 1:
                attempt += 1
                logger.warning(
                    f"Retrying {context} ({attempt}/{self.max_retries}) after {result.message}"
                )
                await self.sleep(delay)
                delay *= BACKOFF_FACTOR
                continue

            result.raise_for_error()

    # Walk

    async def collect(
        self,
        org: str,
        since_by_resource: Optional[Dict[str, Optional[datetime]]] = None,
        until: Optional[datetime] = None,
        run_id: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> CollectionSummary:
        """
        Walk ``org`` and persist every entity inside each resource's window.

        Each resource uses ``since_by_resource[resource]`` (falling back to
        ``since``) as its lower bound and ``until`` as the exclusive upper
        bound. A resource's stored cursor is advanced once that resource is
        fully processed.
        """
        if not org:
            raise ValueError("GitHub organization is not configured")

        since_by_resource = since_by_resource or {}
        windows = {
            resource: TimeWindow(parse_timestamp(since_by_resource.get(resource) or since), parse_timestamp(until))
            for resource in RESOURCES
        }
        summary = CollectionSummary()
        self._review_cache = set()

        with self.tracker.resource_log(run_id, "repositories") as log:
            repositories = await self._collect_repositories(org, summary)
            summary.repositories_processed = len(repositories)
            self._advance(summary, "repositories")
            log.message = f"Processed {len(repositories)} repositories for {org}."

        with self.tracker.resource_log(run_id, "comments") as comments_log:
            with self.tracker.resource_log(run_id, "issues") as log:
                for repository in repositories:
                    await self._collect_issues(repository, windows, summary)
                self._advance(summary, "issues")
                log.message = (
                    f"Upserted {summary.counts['issues']} issues across {len(repositories)} repositories."
                )

            with self.tracker.resource_log(run_id, "discussions") as log:
                for repository in repositories:
                    await self._collect_discussions(repository, windows, summary)
                self._advance(summary, "discussions")
                log.message = (
                    f"Upserted {summary.counts['discussions']} discussions "
                    f"across {len(repositories)} repositories."
                )

            with self.tracker.resource_log(run_id, "pull_requests") as log, \
                    self.tracker.resource_log(run_id, "reviews") as reviews_log:
                for repository in repositories:
                    await self._collect_pull_requests(repository, windows, summary)
                self._advance(summary, "pull_requests")
                self._advance(summary, "reviews")
                log.message = (
                    f"Upserted {summary.counts['pull_requests']} pull requests "
                    f"across {len(repositories)} repositories."
                )
                reviews_log.message = f"Recorded {summary.counts['reviews']} pull request reviews."

            self._advance(summary, "comments")
            comments_log.message = (
                f"Captured {summary.counts['comments']} comments from issues, "
                f"discussions, pull requests, and reviews."
            )

        logger.info(
            f"Collection for {org} finished: {summary.repositories_processed} repositories, "
            f"counts={summary.counts}"
        )
        return summary

    def _advance(self, summary: CollectionSummary, resource: str):
        previous = self.store.get_sync_state().get(resource)
        previous_mark = previous.last_item_timestamp if previous else None
        stored = self.store.advance_sync_cursor(resource, summary.latest[resource])
        if stored is not None and (previous_mark is None or stored > previous_mark):
            summary.advanced[resource] = stored

    async def _collect_repositories(self, org: str, summary: CollectionSummary) -> List[Dict[str, Any]]:
        repositories = []
        cursor = None
        has_next = True
        while has_next:
            logger.info(f"Fetching repositories for {org}" + (f" (cursor {cursor})" if cursor else ""))
            data = await self.request_with_retry(
                queries.ORGANIZATION_REPOSITORIES,
                {"login": org, "cursor": cursor, "pageSize": self.page_size},
                context=f"repositories for {org}",
            )
            connection = ((data or {}).get("organization") or {}).get("repositories")
            for node in connection_nodes(connection):
                owner_id = self.store.upsert_actor(to_actor(node.get("owner")))
                row = to_repository(node, owner_id)
                if row is None:
                    logger.warning(f"Skipping repository without id or name: {node}")
                    continue
                self.store.upsert_repository(row)
                repositories.append(node)
                summary.observe("repositories", node.get("updatedAt"))
            has_next, cursor = page_info(connection)
        return repositories

    async def _collect_issues(self, repository, windows, summary: CollectionSummary):
        window = windows["issues"]
        owner, name = repository["nameWithOwner"].split("/", 1)
        cursor = None
        has_next = True
        while has_next:
            logger.info(
                f"Fetching issues for {repository['nameWithOwner']}"
                + (f" (cursor {cursor})" if cursor else "")
            )
            data = await self.request_with_retry(
                queries.REPOSITORY_ISSUES,
                {
                    "owner": owner,
                    "name": name,
                    "cursor": cursor,
                    "since": format_timestamp(window.since),
                    "pageSize": self.page_size,
                },
                context=f"issues {repository['nameWithOwner']}",
            )
            connection = ((data or {}).get("repository") or {}).get("issues")
            reached_upper_bound = False
            for node in connection_nodes(connection):
                decision = window.evaluate(node.get("updatedAt"))
                if decision == AFTER_UPPER_BOUND:
                    reached_upper_bound = True
                    break
                if decision != INCLUDE:
                    continue
                await self._store_issue_like(repository, node, ItemType.ISSUE, windows, summary)
                summary.counts["issues"] += 1
                summary.observe("issues", node.get("updatedAt"))
            if reached_upper_bound:
                break
            has_next, cursor = page_info(connection)

    async def _collect_discussions(self, repository, windows, summary: CollectionSummary):
        window = windows["discussions"]
        owner, name = repository["nameWithOwner"].split("/", 1)
        cursor = None
        has_next = True
        while has_next:
            logger.info(
                f"Fetching discussions for {repository['nameWithOwner']}"
                + (f" (cursor {cursor})" if cursor else "")
            )
            data = await self.request_with_retry(
                queries.REPOSITORY_DISCUSSIONS,
                {"owner": owner, "name": name, "cursor": cursor, "pageSize": self.page_size},
                context=f"discussions {repository['nameWithOwner']}",
            )
            connection = ((data or {}).get("repository") or {}).get("discussions")
            reached_upper_bound = False
            for node in connection_nodes(connection):
                decision = window.evaluate(node.get("updatedAt"))
                if decision == AFTER_UPPER_BOUND:
                    reached_upper_bound = True
                    break
                if decision != INCLUDE:
                    continue
                await self._store_issue_like(repository, node, ItemType.DISCUSSION, windows, summary)
                summary.counts["discussions"] += 1
                summary.observe("discussions", node.get("updatedAt"))
            if reached_upper_bound:
                break
            has_next, cursor = page_info(connection)

    async def _store_issue_like(self, repository, node, default_type: ItemType, windows, summary):
        item_type = item_type_of(node, default_type)
        if item_type is None:
            logger.warning(f"Skipping node {node.get('id')} of type {node.get('__typename')}")
            return
        author_id = self.store.upsert_actor(to_actor(node.get("author")))
        row = to_issue(node, repository["id"], item_type, author_id)
        self.store.upsert_issue(row, project_item_ids(node))
        summary.changed_ids.add(node["id"])
        self._store_reactions(node.get("reactions"), item_type.value, node["id"], summary)
        await self._collect_comments(repository, node, item_type.value, windows, summary)

    def _store_reactions(self, connection, subject_type: str, subject_id: str, summary):
        for reaction in connection_nodes(connection):
            if not reaction.get("id"):
                continue
            user_id = self.store.upsert_actor(to_actor(reaction.get("user")))
            self.store.upsert_reaction(
                {
                    "id": reaction["id"],
                    "subject_type": subject_type,
                    "subject_id": subject_id,
                    "user_id": user_id,
                    "content": reaction.get("content"),
                    "github_created_at": parse_timestamp(reaction.get("createdAt")),
                    "data": reaction,
                }
            )
            summary.counts["reactions"] += 1

    async def _collect_comments(self, repository, parent, kind: str, windows, summary):
        """Page the comments of an issue, discussion or pull request."""
        window = windows["comments"]
        document, field_name = COMMENT_DOCUMENTS[kind]
        owner, name = repository["nameWithOwner"].split("/", 1)
        label = f"{repository['nameWithOwner']} #{parent['number']}"
        cursor = None
        has_next = True
        while has_next:
            logger.debug(f"Fetching comments for {label}" + (f" (cursor {cursor})" if cursor else ""))
            data = await self.request_with_retry(
                document,
                {
                    "owner": owner,
                    "name": name,
                    "number": parent["number"],
                    "cursor": cursor,
                    "pageSize": self.page_size,
                },
                context=f"comments {label}",
                allow_not_found=True,
            )
            connection = (((data or {}).get("repository") or {}).get(field_name) or {}).get("comments")
            if data is None or connection is None:
                logger.info(f"{label} no longer exists. Skipping comment collection.")
                return
            reached_upper_bound = False
            for comment in connection_nodes(connection):
                decision = window.evaluate(comment.get("createdAt"))
                if decision == AFTER_UPPER_BOUND:
                    reached_upper_bound = True
                    break
                if decision != INCLUDE:
                    continue
                is_pull_request = kind == "pull_request"
                self._store_comment(
                    comment,
                    summary,
                    issue_id=None if is_pull_request else parent["id"],
                    pull_request_id=parent["id"] if is_pull_request else None,
                )
            if reached_upper_bound:
                break
            has_next, cursor = page_info(connection)

    def _store_comment(self, comment, summary, issue_id=None, pull_request_id=None, review_id=None):
        author_id = self.store.upsert_actor(to_actor(comment.get("author")))
        self.store.upsert_comment(
            {
                "id": comment["id"],
                "issue_id": issue_id,
                "pull_request_id": pull_request_id,
                "review_id": review_id,
                "author_id": author_id,
                "github_created_at": parse_timestamp(comment.get("createdAt")),
                "github_updated_at": parse_timestamp(comment.get("updatedAt")),
                "data": comment,
            }
        )
        self._store_reactions(comment.get("reactions"), "comment", comment["id"], summary)
        summary.counts["comments"] += 1
        # Same field the comment window filters on, so the cursor never passes
        # a comment that was not collected
        summary.observe("comments", comment.get("createdAt"))

    async def _collect_pull_requests(self, repository, windows, summary: CollectionSummary):
        window = windows["pull_requests"]
        owner, name = repository["nameWithOwner"].split("/", 1)
        cursor = None
        has_next = True
        while has_next:
            logger.info(
                f"Fetching pull requests for {repository['nameWithOwner']}"
                + (f" (cursor {cursor})" if cursor else "")
            )
            data = await self.request_with_retry(
                queries.REPOSITORY_PULL_REQUESTS,
                {"owner": owner, "name": name, "cursor": cursor, "pageSize": self.page_size},
                context=f"pull requests {repository['nameWithOwner']}",
            )
            connection = ((data or {}).get("repository") or {}).get("pullRequests")
            reached_upper_bound = False
            for node in connection_nodes(connection):
                decision = window.evaluate(node.get("updatedAt"))
                if decision == AFTER_UPPER_BOUND:
                    reached_upper_bound = True
                    break
                if decision != INCLUDE:
                    continue
                await self._store_pull_request(repository, node, windows, summary)
            if reached_upper_bound:
                break
            has_next, cursor = page_info(connection)

    async def _store_pull_request(self, repository, node, windows, summary: CollectionSummary):
        author_id = self.store.upsert_actor(to_actor(node.get("author")))
        self.store.upsert_actor(to_actor(node.get("mergedBy")))
        self.store.upsert_pull_request(
            {
                "id": node["id"],
                "number": node["number"],
                "repository_id": repository["id"],
                "author_id": author_id,
                "title": node.get("title"),
                "state": node.get("state"),
                "merged": node.get("merged"),
                "github_created_at": parse_timestamp(node.get("createdAt")),
                "github_updated_at": parse_timestamp(node.get("updatedAt")),
                "github_closed_at": parse_timestamp(node.get("closedAt")),
                "github_merged_at": parse_timestamp(node.get("mergedAt")),
                "data": node,
            }
        )
        summary.changed_ids.add(node["id"])
        summary.counts["pull_requests"] += 1
        summary.observe("pull_requests", node.get("updatedAt"))

        self._store_review_request_events(node, summary)
        self.store.replace_pull_request_issues(
            node["id"],
            [
                {
                    "issue_id": issue["id"],
                    "issue_number": issue.get("number"),
                    "issue_title": issue.get("title"),
                    "issue_state": issue.get("state"),
                    "issue_url": issue.get("url"),
                    "issue_repository": (issue.get("repository") or {}).get("nameWithOwner"),
                }
                for issue in connection_nodes(node.get("closingIssuesReferences"))
                if issue.get("id")
            ],
        )
        self._store_reactions(node.get("reactions"), "pull_request", node["id"], summary)

        await self._collect_comments(repository, node, "pull_request", windows, summary)
        await self._collect_reviews(repository, node, windows, summary)
        await self._collect_review_threads(repository, node, windows, summary)

    def _reviewer_id(self, reviewer) -> Optional[str]:
        if not reviewer or not reviewer.get("id") or reviewer.get("__typename") == "Team":
            return None
        return self.store.upsert_actor(to_actor(reviewer))

    def _store_review_request_events(self, node, summary: CollectionSummary):
        """Replay request/removal events oldest first to derive pending reviewers."""
        events = [
            event for event in connection_nodes(node.get("timelineItems"))
            if parse_timestamp(event.get("createdAt")) is not None
        ]
        events.sort(key=lambda event: parse_timestamp(event["createdAt"]))
        for event in events:
            typename = event.get("__typename")
            created_at = parse_timestamp(event["createdAt"])
            if typename == "ReviewRequestedEvent":
                reviewer_id = self._reviewer_id(event.get("requestedReviewer"))
                if not reviewer_id or not event.get("id"):
                    continue
                self.store.upsert_review_request(
                    {
                        "id": event["id"],
                        "pull_request_id": node["id"],
                        "reviewer_id": reviewer_id,
                        "requested_at": created_at,
                        "data": event,
                    }
                )
                summary.counts["review_requests"] += 1
            elif typename == "ReviewRequestRemovedEvent":
                reviewer_id = self._reviewer_id(event.get("requestedReviewer"))
                if not reviewer_id:
                    continue
                self.store.mark_review_request_removed(node["id"], reviewer_id, created_at, event)

    async def _collect_reviews(self, repository, pull_request, windows, summary: CollectionSummary):
        window = windows["reviews"]
        owner, name = repository["nameWithOwner"].split("/", 1)
        label = f"{repository['nameWithOwner']} PR #{pull_request['number']}"
        cursor = None
        has_next = True
        while has_next:
            logger.debug(f"Fetching reviews for {label}" + (f" (cursor {cursor})" if cursor else ""))
            data = await self.request_with_retry(
                queries.PULL_REQUEST_REVIEWS,
                {
                    "owner": owner,
                    "name": name,
                    "number": pull_request["number"],
                    "cursor": cursor,
                    "pageSize": self.page_size,
                },
                context=f"reviews {label}",
            )
            connection = (((data or {}).get("repository") or {}).get("pullRequest") or {}).get("reviews")
            reached_upper_bound = False
            for review in connection_nodes(connection):
                decision = window.evaluate(review.get("submittedAt"))
                if decision == AFTER_UPPER_BOUND:
                    reached_upper_bound = True
                    break
                if decision != INCLUDE:
                    continue
                author_id = self.store.upsert_actor(to_actor(review.get("author")))
                self.store.upsert_review(
                    {
                        "id": review["id"],
                        "pull_request_id": pull_request["id"],
                        "author_id": author_id,
                        "state": review.get("state"),
                        "github_submitted_at": parse_timestamp(review.get("submittedAt")),
                        "data": review,
                    }
                )
                self._review_cache.add(review["id"])
                summary.counts["reviews"] += 1
                summary.observe("reviews", review.get("submittedAt"))
            if reached_upper_bound:
                break
            has_next, cursor = page_info(connection)

    def _known_review(self, review_id: Optional[str]) -> Optional[str]:
        if not review_id:
            return None
        if review_id in self._review_cache:
            return review_id
        if self.store.review_exists(review_id):
            self._review_cache.add(review_id)
            return review_id
        return None

    async def _collect_review_threads(self, repository, pull_request, windows, summary):
        window = windows["comments"]
        owner, name = repository["nameWithOwner"].split("/", 1)
        label = f"{repository['nameWithOwner']} PR #{pull_request['number']}"
        cursor = None
        has_next = True
        while has_next:
            logger.debug(f"Fetching review threads for {label}" + (f" (cursor {cursor})" if cursor else ""))
            data = await self.request_with_retry(
                queries.PULL_REQUEST_REVIEW_THREADS,
                {"owner": owner, "name": name, "number": pull_request["number"], "cursor": cursor},
                context=f"review threads {label}",
                allow_not_found=True,
            )
            connection = (((data or {}).get("repository") or {}).get("pullRequest") or {}).get(
                "reviewThreads"
            )
            if data is None or connection is None:
                logger.info(f"{label} no longer exists. Skipping review thread collection.")
                return
            for thread in connection_nodes(connection):
                # Threads are not ordered by time, so filter without stopping early
                for comment in connection_nodes(thread.get("comments")):
                    if not window.includes(comment.get("createdAt")):
                        continue
                    review_id = self._known_review((comment.get("pullRequestReview") or {}).get("id"))
                    self._store_comment(
                        comment,
                        summary,
                        pull_request_id=pull_request["id"],
                        review_id=review_id,
                    )
            has_next, cursor = page_info(connection)
