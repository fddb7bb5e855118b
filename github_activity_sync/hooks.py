"""
Downstream refresh hooks

Consumers of synced data (activity caches, attention badges) are notified once
per finished run, after the run's terminal status has been written.
"""
import logging
from typing import Iterable, Optional, Protocol

logger = logging.getLogger(__name__)


class RefreshHooks(Protocol):
    def refresh_caches(self, run_id: Optional[int], changed_ids: Optional[Iterable[str]]) -> None:
        ...

    def recompute_attention(self, changed_ids: Optional[Iterable[str]]) -> None:
        ...


class LoggingRefreshHooks:
    """No-op hooks that only log what would have been refreshed."""

    def refresh_caches(self, run_id, changed_ids):
        scope = "all items" if changed_ids is None else f"{len(list(changed_ids))} items"
        logger.info(f"Cache refresh requested after run {run_id} ({scope})")

    def recompute_attention(self, changed_ids):
        scope = "all items" if changed_ids is None else f"{len(list(changed_ids))} items"
        logger.info(f"Attention recomputation requested ({scope})")


class ActivityCacheHooks(LoggingRefreshHooks):
    """Rebuilds the ``activity_items`` snapshot rows for changed issues."""

    def __init__(self, store):
        self.store = store

    def refresh_caches(self, run_id, changed_ids):
        count = self.store.refresh_activity_items(changed_ids)
        logger.info(f"Refreshed {count} activity items after run {run_id}")


def notify_refresh(hooks: Optional[RefreshHooks], run_id: Optional[int], changed_ids=None):
    """
    Call each hook once. ``changed_ids`` of None means a full refresh.

    Hook failures are logged and never change the outcome of the run.
    """
    if hooks is None:
        return
    ids = None if changed_ids is None else sorted(set(changed_ids))
    try:
        hooks.refresh_caches(run_id, ids)
    except Exception as e:
        logger.error(f"Cache refresh hook failed after run {run_id}: {e}", exc_info=True)
    try:
        hooks.recompute_attention(ids)
    except Exception as e:
        logger.error(f"Attention hook failed after run {run_id}: {e}", exc_info=True)
