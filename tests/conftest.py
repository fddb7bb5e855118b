"""Shared fixtures: a temporary SQLite store and an in-memory GitHub graph."""

import re
from datetime import datetime, timedelta, timezone

import pytest

from github_activity_sync import config
from github_activity_sync.database import get_engine, init_db
from github_activity_sync.github.client import GraphQLResult, RateLimit
from github_activity_sync.github.nodes import format_timestamp, parse_timestamp
from github_activity_sync.storage import SyncStore

ORG = "acme"


# =============================================================================
# Builders
# =============================================================================


def ts(value: str) -> datetime:
    return parse_timestamp(value)


def make_actor(login: str, typename: str = "User") -> dict:
    return {
        "__typename": typename,
        "id": f"U_{login}",
        "login": login,
        "name": login.title(),
        "avatarUrl": f"https://avatars.test/{login}",
    }


def make_repo(name: str, owner: str = ORG, updated: str = "2024-01-01T00:00:00Z") -> dict:
    return {
        "id": f"R_{owner}_{name}",
        "name": name,
        "nameWithOwner": f"{owner}/{name}",
        "url": f"https://github.com/{owner}/{name}",
        "isPrivate": False,
        "createdAt": "2020-01-01T00:00:00Z",
        "updatedAt": updated,
        "owner": make_actor(owner, "Organization"),
    }


def make_issue(repo: dict, number: int, updated: str, node_id: str = None, **extra) -> dict:
    node = {
        "__typename": "Issue",
        "id": node_id or f"I_{repo['name']}_{number}",
        "number": number,
        "title": f"Issue {number}",
        "state": "OPEN",
        "url": f"{repo['url']}/issues/{number}",
        "createdAt": "2023-06-01T00:00:00Z",
        "updatedAt": updated,
        "closedAt": None,
        "author": make_actor("alice"),
        "projectItems": {"nodes": []},
        "reactions": {"nodes": []},
    }
    node.update(extra)
    return node


def make_discussion(repo: dict, number: int, updated: str, closed: str = None) -> dict:
    return {
        "__typename": "Discussion",
        "id": f"D_{repo['name']}_{number}",
        "number": number,
        "title": f"Discussion {number}",
        "url": f"{repo['url']}/discussions/{number}",
        "createdAt": "2023-06-01T00:00:00Z",
        "updatedAt": updated,
        "closedAt": closed,
        "author": make_actor("bob"),
        "reactions": {"nodes": []},
    }


def make_pull_request(repo: dict, number: int, updated: str, **extra) -> dict:
    node = {
        "id": f"PR_{repo['name']}_{number}",
        "number": number,
        "title": f"PR {number}",
        "state": "OPEN",
        "url": f"{repo['url']}/pull/{number}",
        "createdAt": "2023-06-01T00:00:00Z",
        "updatedAt": updated,
        "closedAt": None,
        "mergedAt": None,
        "merged": False,
        "author": make_actor("carol"),
        "mergedBy": None,
        "timelineItems": {"nodes": []},
        "closingIssuesReferences": {"nodes": []},
        "reactions": {"nodes": []},
    }
    node.update(extra)
    return node


def make_comment(comment_id: str, created: str, updated: str = None, author: str = "dave", **extra) -> dict:
    node = {
        "id": comment_id,
        "author": make_actor(author),
        "createdAt": created,
        "updatedAt": updated or created,
        "url": f"https://github.com/comments/{comment_id}",
        "body": "text",
        "reactions": {"nodes": []},
    }
    node.update(extra)
    return node


def make_review(review_id: str, submitted: str, state: str = "APPROVED") -> dict:
    return {
        "id": review_id,
        "author": make_actor("erin"),
        "submittedAt": submitted,
        "state": state,
        "body": "",
        "url": f"https://github.com/reviews/{review_id}",
    }


def graphql_error_result(message="Something went wrong", error_type=None, status_code=200, rate_limit=None, headers=None):
    error = {"message": message}
    if error_type:
        error["type"] = error_type
    return GraphQLResult(
        data=None,
        errors=[error],
        status_code=status_code,
        rate_limit=RateLimit.from_payload(rate_limit),
        headers=headers or {},
    )


# =============================================================================
# Fake GitHub graph
# =============================================================================


class FakeGraph:
    """
    Answers the GraphQL documents the sync engine sends, from in-memory data.

    ``script`` queues canned results per operation: each call pops the next
    entry; ``None`` means "answer normally".
    """

    def __init__(self):
        self.repositories = []
        self.issues = {}
        self.discussions = {}
        self.pull_requests = {}
        self.comments = {}
        self.reviews = {}
        self.review_threads = {}
        self.nodes = {}
        self.resources = {}
        self.calls = []
        self.script = {}
        self.rate_limit = {
            "cost": 1,
            "remaining": 4999,
            "resetAt": format_timestamp(datetime.now(timezone.utc) + timedelta(hours=1)),
        }

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return None

    def add_repository(self, repo: dict):
        self.repositories.append(repo)
        self.issues.setdefault(repo["nameWithOwner"], [])
        self.discussions.setdefault(repo["nameWithOwner"], [])
        self.pull_requests.setdefault(repo["nameWithOwner"], [])
        return repo

    def calls_for(self, operation: str):
        return [variables for op, variables in self.calls if op == operation]

    async def execute(self, document, variables=None):
        operation = re.search(r"query (\w+)", document).group(1)
        variables = dict(variables or {})
        self.calls.append((operation, variables))
        queued = self.script.get(operation)
        if queued:
            entry = queued.pop(0)
            if entry is not None:
                return entry
        result = getattr(self, f"_{operation}")(variables)
        if isinstance(result, GraphQLResult):
            return result
        result["rateLimit"] = dict(self.rate_limit)
        return GraphQLResult(
            data=result,
            status_code=200,
            rate_limit=RateLimit.from_payload(result["rateLimit"]),
        )

    async def request(self, document, variables=None):
        result = await self.execute(document, variables)
        result.raise_for_error()
        return result.data

    @staticmethod
    def _page(items, variables):
        size = variables.get("pageSize") or 100
        start = int(variables.get("cursor") or 0)
        chunk = items[start:start + size]
        end = start + len(chunk)
        return {
            "pageInfo": {"hasNextPage": end < len(items), "endCursor": str(end)},
            "nodes": chunk,
        }

    @staticmethod
    def _by_updated(items):
        return sorted(items, key=lambda node: parse_timestamp(node["updatedAt"]))

    @staticmethod
    def _not_found(path):
        return GraphQLResult(
            data={"repository": {path: None}},
            errors=[{"type": "NOT_FOUND", "message": "Could not resolve to a node"}],
            status_code=200,
        )

    def _OrganizationRepositories(self, variables):
        return {"organization": {"repositories": self._page(self.repositories, variables)}}

    def _RepositoryIssues(self, variables):
        key = f"{variables['owner']}/{variables['name']}"
        since = parse_timestamp(variables.get("since"))
        items = [
            issue for issue in self._by_updated(self.issues.get(key, []))
            if since is None or parse_timestamp(issue["updatedAt"]) >= since
        ]
        return {"repository": {"issues": self._page(items, variables)}}

    def _RepositoryDiscussions(self, variables):
        key = f"{variables['owner']}/{variables['name']}"
        items = self._by_updated(self.discussions.get(key, []))
        return {"repository": {"discussions": self._page(items, variables)}}

    def _RepositoryPullRequests(self, variables):
        key = f"{variables['owner']}/{variables['name']}"
        items = self._by_updated(self.pull_requests.get(key, []))
        return {"repository": {"pullRequests": self._page(items, variables)}}

    def _comments(self, kind, collection, path, variables):
        key = f"{variables['owner']}/{variables['name']}"
        numbers = {node["number"] for node in collection.get(key, [])}
        if variables["number"] not in numbers:
            return self._not_found(path)
        items = self.comments.get((kind, key, variables["number"]), [])
        return {"repository": {path: {"comments": self._page(items, variables)}}}

    def _IssueComments(self, variables):
        return self._comments("issue", self.issues, "issue", variables)

    def _DiscussionComments(self, variables):
        return self._comments("discussion", self.discussions, "discussion", variables)

    def _PullRequestComments(self, variables):
        return self._comments("pull_request", self.pull_requests, "pullRequest", variables)

    def _PullRequestReviews(self, variables):
        key = f"{variables['owner']}/{variables['name']}"
        items = self.reviews.get((key, variables["number"]), [])
        return {"repository": {"pullRequest": {"reviews": self._page(items, variables)}}}

    def _PullRequestReviewThreads(self, variables):
        key = f"{variables['owner']}/{variables['name']}"
        threads = self.review_threads.get((key, variables["number"]), [])
        items = [
            {"id": f"T{index}", "comments": {"nodes": comments}}
            for index, comments in enumerate(threads)
        ]
        return {"repository": {"pullRequest": {"reviewThreads": self._page(items, variables)}}}

    def _NodeDetails(self, variables):
        return {"nodes": [self.nodes.get(node_id) for node_id in variables["ids"]]}

    def _ResourceByUrl(self, variables):
        return {"resource": self.resources.get(variables["url"])}


class SleepRecorder:
    """Stand-in for ``asyncio.sleep`` that records requested delays."""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    """Keep the developer's environment out of the tests."""
    monkeypatch.setattr(config, "GITHUB_ORG", "")
    monkeypatch.setattr(config, "GITHUB_TOKEN", "")


@pytest.fixture
def engine(tmp_path):
    engine = get_engine(f"sqlite:///{tmp_path / 'sync.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return SyncStore(engine)


@pytest.fixture
def graph():
    return FakeGraph()


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest.fixture
def seed(store):
    """Write a repository plus issues straight into the store."""

    class Seeder:
        def repository(self, repo: dict):
            owner_id = store.upsert_actor(
                {"id": repo["owner"]["id"], "login": repo["owner"]["login"]}
            )
            store.upsert_repository(
                {
                    "id": repo["id"],
                    "name": repo["name"],
                    "name_with_owner": repo["nameWithOwner"],
                    "owner_id": owner_id,
                    "url": repo["url"],
                    "is_private": False,
                }
            )
            return repo

        def issue(self, issue_id, repo, number=1, url=None, updated="2024-01-01T00:00:00Z",
                  title=None, project_items=(), checked_at=None):
            store.upsert_issue(
                {
                    "id": issue_id,
                    "number": number,
                    "repository_id": repo["id"],
                    "item_type": "issue",
                    "title": title or f"Issue {number}",
                    "state": "OPEN",
                    "url": url if url is not None else f"{repo['url']}/issues/{number}",
                    "github_updated_at": ts(updated),
                    "data": {"id": issue_id, "number": number},
                },
                project_items,
            )
            if checked_at is not None:
                store.mark_ownership_checked([issue_id], checked_at)
            return issue_id

        def comment(self, comment_id, issue_id=None, pull_request_id=None):
            return store.upsert_comment(
                {
                    "id": comment_id,
                    "issue_id": issue_id,
                    "pull_request_id": pull_request_id,
                    "github_created_at": ts("2024-01-02T00:00:00Z"),
                    "data": {"id": comment_id},
                }
            )

    return Seeder()
