"""
Payload Normalization

Helpers that turn raw GraphQL nodes into the column values the store expects.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from github_activity_sync.models import ItemType

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime (None if unparsable)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    value = parse_timestamp(value)
    if value.microsecond:
        return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"
    return value.strftime(TIMESTAMP_FORMAT)


def max_timestamp(current: Optional[datetime], candidate) -> Optional[datetime]:
    candidate = parse_timestamp(candidate)
    if candidate is None:
        return current
    if current is None or candidate > current:
        return candidate
    return current


def to_actor(actor: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Normalize an author/owner/user node, or None when it carries no id."""
    if not actor or not actor.get("id"):
        return None
    return {
        "id": actor["id"],
        "login": actor.get("login"),
        "name": actor.get("name"),
        "avatar_url": actor.get("avatarUrl"),
        "github_created_at": parse_timestamp(actor.get("createdAt")),
        "github_updated_at": parse_timestamp(actor.get("updatedAt")),
        "data": actor,
    }


def to_repository(node: Dict[str, Any], owner_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if not node or not node.get("id") or not node.get("nameWithOwner"):
        return None
    name_with_owner = node["nameWithOwner"]
    return {
        "id": node["id"],
        "name": node.get("name") or name_with_owner.split("/")[-1],
        "name_with_owner": name_with_owner,
        "owner_id": owner_id,
        "url": node.get("url"),
        "is_private": node.get("isPrivate"),
        "github_created_at": parse_timestamp(node.get("createdAt")),
        "github_updated_at": parse_timestamp(node.get("updatedAt")),
        "data": node,
    }


def item_type_of(node: Dict[str, Any], default: ItemType = ItemType.ISSUE) -> Optional[ItemType]:
    """
    Decide the item variant from ``__typename``.

    Nodes without a typename take ``default`` (the kind of the connection that
    produced them). Any other typename is not an issue-like item.
    """
    typename = node.get("__typename")
    if typename is None:
        return default
    if typename == "Issue":
        return ItemType.ISSUE
    if typename == "Discussion":
        return ItemType.DISCUSSION
    return None


def discussion_state(node: Dict[str, Any]) -> str:
    return "closed" if node.get("closedAt") else "open"


def project_item_ids(node: Dict[str, Any]) -> List[str]:
    items = (node.get("projectItems") or {}).get("nodes") or []
    seen = []
    for item in items:
        item_id = (item or {}).get("id")
        if item_id and item_id not in seen:
            seen.append(item_id)
    return seen


PROJECT_REMOVED_STATUS = "__PROJECT_REMOVED__"
PROJECT_STATUS_HISTORY_KEY = "projectStatusHistory"


def _field_value_label(value) -> Optional[str]:
    if not isinstance(value, dict):
        return None
    for key in ("name", "title", "text"):
        label = value.get(key)
        if isinstance(label, str) and label.strip():
            return label.strip()
    number = value.get("number")
    if isinstance(number, (int, float)) and not isinstance(number, bool):
        return str(number)
    return None


def project_status_snapshots(node: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Current status of every project item on an issue node, one entry per item."""
    snapshots = []
    for item in connection_nodes(node.get("projectItems")):
        if not item.get("id"):
            continue
        status = item.get("status")
        label = _field_value_label(status)
        occurred_at = None
        for candidate in ((status or {}).get("updatedAt"), (status or {}).get("createdAt"),
                          item.get("updatedAt"), item.get("createdAt")):
            if isinstance(candidate, str) and candidate:
                occurred_at = candidate
                break
        if not label or not occurred_at:
            continue
        snapshots.append(
            {
                "projectItemId": item["id"],
                "projectTitle": (item.get("project") or {}).get("title"),
                "status": label,
                "occurredAt": occurred_at,
            }
        )
    return snapshots


def stored_project_status_history(data) -> List[Dict[str, Any]]:
    """Well-formed history entries from a stored issue payload."""
    if not isinstance(data, dict):
        return []
    entries = []
    for entry in data.get(PROJECT_STATUS_HISTORY_KEY) or []:
        if not isinstance(entry, dict):
            continue
        if not all(isinstance(entry.get(key), str) for key in ("projectItemId", "status", "occurredAt")):
            continue
        title = entry.get("projectTitle")
        entries.append(
            {
                "projectItemId": entry["projectItemId"],
                "projectTitle": title if isinstance(title, str) else None,
                "status": entry["status"],
                "occurredAt": entry["occurredAt"],
            }
        )
    return entries


def _history_order(entry):
    parsed = parse_timestamp(entry["occurredAt"])
    return (parsed is None, parsed or datetime.min.replace(tzinfo=timezone.utc), entry["occurredAt"])


def project_removal_entries(previous, snapshots, detected_at: Optional[str]) -> List[Dict[str, Any]]:
    """
    One removal entry per previously tracked project item that is no longer
    on the issue, unless its removal was already recorded.
    """
    current_ids = {snapshot["projectItemId"] for snapshot in snapshots}
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for entry in previous:
        grouped.setdefault(entry["projectItemId"], []).append(entry)

    timestamp = detected_at or format_timestamp(datetime.now(timezone.utc))
    removals = []
    for item_id, entries in grouped.items():
        if item_id in current_ids:
            continue
        if any(entry["status"] == PROJECT_REMOVED_STATUS for entry in entries):
            continue
        last = sorted(entries, key=_history_order)[-1]
        removals.append(
            {
                "projectItemId": item_id,
                "projectTitle": last.get("projectTitle"),
                "status": PROJECT_REMOVED_STATUS,
                "occurredAt": timestamp,
            }
        )
    return removals


def merge_project_status_history(existing, additions) -> List[Dict[str, Any]]:
    """Union keyed by (item, status, time), oldest first. Known titles are kept."""
    merged: Dict[tuple, Dict[str, Any]] = {}
    for entry in list(existing) + list(additions):
        key = (entry["projectItemId"], entry["status"], entry["occurredAt"])
        current = merged.get(key)
        if current is None:
            merged[key] = dict(entry)
        elif not current.get("projectTitle") and entry.get("projectTitle"):
            current["projectTitle"] = entry["projectTitle"]
    return sorted(merged.values(), key=_history_order)


def with_project_status_history(row: Dict[str, Any], previous_data) -> Dict[str, Any]:
    """
    Carry the stored status history into a fresh ``issues`` row.

    The remote payload only shows each project item's current status, so the
    timeline is kept locally: new snapshots and removals are merged into what
    ``previous_data`` already recorded. Payloads that did not select
    ``projectItems`` keep the history as it is.
    """
    data = row.get("data")
    if not isinstance(data, dict):
        return row
    previous = stored_project_status_history(previous_data)
    if "projectItems" in data:
        snapshots = project_status_snapshots(data)
        removals = project_removal_entries(previous, snapshots, data.get("updatedAt"))
        history = merge_project_status_history(previous, snapshots + removals)
    else:
        history = previous
    if not history:
        return row
    return dict(row, data=dict(data, **{PROJECT_STATUS_HISTORY_KEY: history}))


def to_issue(
    node: Dict[str, Any],
    repository_id: str,
    item_type: ItemType,
    author_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the ``issues`` row for an issue or discussion node."""
    if item_type is ItemType.DISCUSSION:
        state = discussion_state(node)
        data = dict(node, __typename="Discussion")
    else:
        state = node.get("state")
        data = node
    return {
        "id": node["id"],
        "number": node["number"],
        "repository_id": repository_id,
        "author_id": author_id,
        "item_type": item_type.value,
        "title": node.get("title"),
        "state": state,
        "url": node.get("url"),
        "github_created_at": parse_timestamp(node.get("createdAt")),
        "github_updated_at": parse_timestamp(node.get("updatedAt")),
        "github_closed_at": parse_timestamp(node.get("closedAt")),
        "data": data,
    }


def connection_nodes(connection: Optional[Dict[str, Any]]) -> Iterable[Dict[str, Any]]:
    for node in (connection or {}).get("nodes") or []:
        if node:
            yield node


def page_info(connection: Optional[Dict[str, Any]]):
    info = (connection or {}).get("pageInfo") or {}
    return bool(info.get("hasNextPage")), info.get("endCursor")


INCLUDE = "include"
BEFORE_LOWER_BOUND = "before"
AFTER_UPPER_BOUND = "after"
MISSING = "missing"


@dataclass(frozen=True)
class TimeWindow:
    """Half-open ``[since, until)`` window; either bound may be open."""

    since: Optional[datetime] = None
    until: Optional[datetime] = None

    def evaluate(self, timestamp) -> str:
        value = parse_timestamp(timestamp)
        if value is None:
            return MISSING
        if self.since is not None and value < self.since:
            return BEFORE_LOWER_BOUND
        if self.until is not None and value >= self.until:
            return AFTER_UPPER_BOUND
        return INCLUDE

    def includes(self, timestamp) -> bool:
        return self.evaluate(timestamp) == INCLUDE
