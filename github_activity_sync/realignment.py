"""
Repository Realignment

Repair pass for issues and discussions whose stored repository or URL drifted
from GitHub (repository transfers, renames, re-created nodes). Each candidate
is re-resolved against the API and, when its node id changed, its local
history is migrated to the new id before the fresh data is upserted.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set

import httpx

from github_activity_sync import config
from github_activity_sync.github import queries
from github_activity_sync.github.client import GitHubClientError, RateLimitExceeded
from github_activity_sync.github.nodes import (
    item_type_of,
    project_item_ids,
    to_actor,
    to_issue,
    to_repository,
)
from github_activity_sync.hooks import notify_refresh

logger = logging.getLogger(__name__)

ISSUE_LIKE_TYPES = ("Issue", "Discussion")


@dataclass
class RealignmentSummary:
    candidates: int = 0
    updated: int = 0
    dry_run: bool = False
    halted_by_rate_limit: bool = False
    updated_ids: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            "candidates": self.candidates,
            "updated": self.updated,
            "dry_run": self.dry_run,
            "halted_by_rate_limit": self.halted_by_rate_limit,
            "updated_ids": list(self.updated_ids),
        }


def _chunks(items, size):
    if size <= 0:
        yield list(items)
        return
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _issue_like_nodes(data) -> Dict[str, dict]:
    nodes = {}
    for node in (data or {}).get("nodes") or []:
        if node and node.get("id") and node.get("__typename") in ISSUE_LIKE_TYPES:
            nodes[node["id"]] = node
    return nodes


def _utcnow():
    return datetime.now(timezone.utc)


class Realigner:
    """
    Re-resolves candidate issues/discussions and repairs their ownership.

    ``http`` follows URL redirects (HEAD requests, redirects handled manually);
    one is created on demand when not supplied.
    """

    def __init__(
        self,
        client,
        store,
        http: Optional[httpx.AsyncClient] = None,
        sleep: Callable = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
        max_redirect_hops: int = config.MAX_REDIRECT_HOPS,
        rate_limit_floor: int = config.REALIGN_RATE_LIMIT_FLOOR,
        max_rate_limit_retries: int = config.MAX_RATE_LIMIT_RETRIES,
    ):
        self.client = client
        self.store = store
        self._http = http
        self._owns_http = http is None
        self.sleep = sleep
        self.clock = clock
        self.max_redirect_hops = max_redirect_hops
        self.rate_limit_floor = rate_limit_floor
        self.max_rate_limit_retries = max_rate_limit_retries
        self.wait_for_rate_limit = False
        self.wait_timeout = config.REALIGN_WAIT_TIMEOUT_SECONDS

    async def __aenter__(self) -> "Realigner":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def close(self):
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=config.REQUEST_TIMEOUT_SECONDS)
        return self._http

    async def realign(
        self,
        limit: int = config.REALIGN_LIMIT,
        chunk_size: int = config.REALIGN_CHUNK_SIZE,
        dry_run: bool = False,
        wait_for_rate_limit: bool = False,
        wait_timeout: float = config.REALIGN_WAIT_TIMEOUT_SECONDS,
        ids: Optional[Iterable[str]] = None,
        refresh_hooks=None,
    ) -> RealignmentSummary:
        """
        Run passes over ownership candidates until none are left unseen, the
        candidate query comes back short of ``limit`` or the rate budget
        halts the pass.
        """
        ids = list(ids) if ids is not None else None
        self.wait_for_rate_limit = wait_for_rate_limit
        self.wait_timeout = wait_timeout
        updated_ids: Set[str] = set()
        seen: Set[str] = set()
        total = 0
        halted = False
        iteration = 0

        while True:
            candidates = self.store.fetch_ownership_candidates(limit, ids)
            fresh = [candidate for candidate in candidates if candidate.id not in seen]
            if not fresh:
                if iteration == 0:
                    logger.info("[realign] No repository/url mismatches detected.")
                break

            iteration += 1
            total += len(fresh)
            seen.update(candidate.id for candidate in fresh)
            logger.info(f"[realign] Pass #{iteration}: processing {len(fresh)} candidates.")

            halted = await self._process_batch(fresh, chunk_size, dry_run, updated_ids)
            if dry_run or halted or ids is not None or len(candidates) < limit:
                break

        if not dry_run and updated_ids:
            notify_refresh(refresh_hooks, None, updated_ids)

        return RealignmentSummary(
            candidates=total,
            updated=0 if dry_run else len(updated_ids),
            dry_run=dry_run,
            halted_by_rate_limit=halted,
            updated_ids=[] if dry_run else sorted(updated_ids),
        )

    async def _execute(self, document: str, variables: dict):
        """
        Execute a query, waiting out throttled answers when the pass may wait.

        Raises ``RateLimitExceeded`` when the pass has to stop instead: waiting
        is not allowed, the reset is beyond the wait timeout, or
        ``max_rate_limit_retries`` throttled answers came back in a row.
        """
        retries = 0
        while True:
            result = await self.client.execute(document, variables)
            if not result.is_rate_limited:
                return result
            retries += 1
            wait = result.retry_after()
            if retries > self.max_rate_limit_retries:
                logger.warning(f"[realign] Still rate limited after {self.max_rate_limit_retries} retries.")
                raise RateLimitExceeded(retry_after=wait, reset_at=result.reset_at())
            if not await self._wait_for_reset(wait, 0):
                raise RateLimitExceeded(retry_after=wait, reset_at=result.reset_at())

    async def _process_batch(self, candidates, chunk_size, dry_run, updated_ids) -> bool:
        """Returns True when the rate limit halted the pass."""
        checked: Set[str] = set()
        try:
            for group in _chunks(candidates, chunk_size):
                try:
                    result = await self._execute(
                        queries.NODE_DETAILS, {"ids": [candidate.id for candidate in group]}
                    )
                except RateLimitExceeded:
                    return True
                if result.data is None:
                    result.raise_for_error()
                nodes = _issue_like_nodes(result.data)

                for candidate in group:
                    try:
                        new_id = await self._realign_candidate(candidate, nodes.get(candidate.id), dry_run)
                    except RateLimitExceeded as e:
                        # Left unstamped so the next pass picks it up again
                        logger.warning(f"[realign] {candidate.id}: lookup throttled ({e}).")
                        return True
                    except GitHubClientError as e:
                        checked.add(candidate.id)
                        logger.warning(f"[realign] {candidate.id}: lookup failed ({e}). Skipping.")
                        continue
                    checked.add(candidate.id)
                    if new_id:
                        checked.add(new_id)
                        updated_ids.add(new_id)

                rate_limit = result.rate_limit
                if rate_limit is not None and rate_limit.remaining is not None:
                    if rate_limit.remaining <= self.rate_limit_floor:
                        wait = None
                        if rate_limit.reset_at is not None:
                            wait = (rate_limit.reset_at - self.clock()).total_seconds()
                        if not await self._wait_for_reset(wait, rate_limit.remaining):
                            return True
            return False
        finally:
            if not dry_run and checked:
                self.store.mark_ownership_checked(checked)

    async def _wait_for_reset(self, wait, remaining) -> bool:
        """Sleep until the budget resets when allowed; False means halt the pass."""
        if self.wait_for_rate_limit and wait is not None and 0 < wait <= self.wait_timeout:
            logger.info(f"[realign] Rate limit low (remaining: {remaining}). Waiting {wait:.0f}s for reset.")
            await self.sleep(wait)
            return True
        logger.warning(f"[realign] Stopping early to respect rate limit (remaining: {remaining}).")
        return False

    async def _realign_candidate(self, candidate, node, dry_run: bool) -> Optional[str]:
        """Resolve one candidate; returns the id upserted, if any."""
        resolved_url = None
        if node is None and candidate.url:
            fallback = await self._resolve_from_url(candidate.url)
            if fallback is not None:
                node, resolved_url = fallback
        if node is None:
            sibling_id = self.store.find_issue_id_by_project_items(
                candidate.project_item_ids, exclude_id=candidate.id
            )
            if sibling_id:
                node = await self._fetch_node(sibling_id)
                if node is not None and not resolved_url:
                    resolved_url = node.get("url")
        if node is None:
            logger.info(
                f"[realign] Node {candidate.id} could not be resolved "
                f"(url={candidate.url or 'unknown'}). Skipping."
            )
            return None

        item_type = item_type_of(node)
        if node.get("__typename") not in ISSUE_LIKE_TYPES or item_type is None:
            logger.info(f"[realign] Node {candidate.id} is not an Issue or Discussion. Skipping.")
            return None

        repository = node.get("repository") or {}
        if not repository.get("id") or not repository.get("nameWithOwner"):
            logger.info(f"[realign] Node {node['id']} does not include repository details. Skipping.")
            return None

        new_url = resolved_url or node.get("url") or candidate.url
        repo_id_changed = candidate.repository_id != repository["id"]
        repo_name_changed = candidate.stored_repo != repository["nameWithOwner"]
        url_changed = (candidate.url or "") != (new_url or "")
        node_id_changed = candidate.id != node["id"]

        if not (repo_id_changed or repo_name_changed or url_changed or node_id_changed):
            if candidate.ui_mismatch:
                logger.info(
                    f"[realign] {candidate.id}: URL ({candidate.url}) no longer resolves, but canonical "
                    f"data still matches {repository['nameWithOwner']}. Skipping."
                )
            return None

        logger.info(
            f"[realign] {node['id']}: repo {candidate.stored_repo or 'unknown'} -> "
            f"{repository['nameWithOwner']} (repo_id_changed={repo_id_changed}, "
            f"name_changed={repo_name_changed}), url {candidate.url or 'unknown'} -> "
            f"{new_url or 'unknown'} (changed={url_changed}), node_id_changed={node_id_changed}"
        )
        if dry_run:
            return None

        if node_id_changed:
            self.store.migrate_issue_identity(candidate.id, node["id"])

        owner_id = self.store.upsert_actor(to_actor(repository.get("owner")))
        self.store.upsert_repository(to_repository(repository, owner_id))
        author_id = self.store.upsert_actor(to_actor(node.get("author")))

        row = to_issue(node, repository["id"], item_type, author_id)
        if new_url:
            row["url"] = new_url
            row["data"] = dict(row["data"], url=new_url)
        self.store.upsert_issue(row, project_item_ids(node))
        logger.info(f"[realign] {node['id']}: upserted with repository {repository['nameWithOwner']}.")
        return node["id"]

    async def _fetch_node(self, node_id: str) -> Optional[dict]:
        result = await self._execute(queries.NODE_DETAILS, {"ids": [node_id]})
        if result.data is None:
            result.raise_for_error()
        return _issue_like_nodes(result.data).get(node_id)

    async def _lookup_node_id_by_url(self, url: str) -> Optional[str]:
        result = await self._execute(queries.RESOURCE_BY_URL, {"url": url})
        if result.data is None:
            result.raise_for_error()
        resource = result.data.get("resource") or {}
        if resource.get("id") and resource.get("__typename") in ISSUE_LIKE_TYPES:
            return resource["id"]
        return None

    async def _resolve_from_url(self, url: str):
        attempts = [url]
        redirect = await self.resolve_redirect(url)
        if redirect and redirect != url:
            attempts.append(redirect)
        for attempt in attempts:
            node_id = await self._lookup_node_id_by_url(attempt)
            if not node_id:
                continue
            node = await self._fetch_node(node_id)
            if node is not None:
                return node, attempt
        return None

    async def resolve_redirect(self, url: str) -> Optional[str]:
        """
        Follow redirects from ``url`` with HEAD requests, at most
        ``max_redirect_hops`` hops. Returns the final URL, or None when it
        does not resolve.
        """
        current = url
        for _ in range(self.max_redirect_hops):
            try:
                response = await self.http.head(
                    current, headers={"Accept": "text/html"}, follow_redirects=False
                )
            except httpx.HTTPError as e:
                logger.info(f"[realign] Failed to resolve redirect for {url}: {e}")
                return None
            location = response.headers.get("location")
            if response.is_redirect and location:
                current = str(httpx.URL(current).join(location))
                continue
            if response.is_success:
                return current
            return None
        return current if current != url else None
