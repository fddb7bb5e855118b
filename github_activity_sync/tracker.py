"""
Run/Log Tracker

Keeps the ``sync_runs`` and ``sync_log`` lifecycle: ``running`` then either
``success`` or ``failed``.
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

from github_activity_sync.models import RunStatus

logger = logging.getLogger(__name__)


def describe_error(error: BaseException) -> str:
    message = str(error)
    return message if message else type(error).__name__


class ResourceLog:
    """Handle for one in-flight per-resource log entry."""

    def __init__(self, log_id: int, resource: str):
        self.log_id = log_id
        self.resource = resource
        self.message: Optional[str] = None


class RunTracker:
    def __init__(self, store):
        self.store = store

    def start_run(
        self,
        run_type: str,
        strategy: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        run_id = self.store.create_sync_run(run_type, strategy, since, until)
        logger.info(f"Started sync run {run_id} ({run_type}/{strategy}, since={since}, until={until})")
        return run_id

    def complete_run(self, run_id: int):
        self.store.finish_sync_run(run_id, RunStatus.SUCCESS.value)
        logger.info(f"Sync run {run_id} completed successfully")

    def fail_run(self, run_id: int, error) -> str:
        message = describe_error(error) if isinstance(error, BaseException) else str(error)
        self.store.finish_sync_run(run_id, RunStatus.FAILED.value, message)
        logger.error(f"Sync run {run_id} failed: {message}")
        return message

    @contextmanager
    def resource_log(self, run_id: Optional[int], resource: str):
        """
        Record one log entry for ``resource`` around a block of work.

        The entry is marked success with ``handle.message`` when the block
        finishes, or failed with the error text before the error propagates.
        """
        handle = ResourceLog(self.store.record_sync_log(run_id, resource), resource)
        try:
            yield handle
        except BaseException as e:
            self.store.finish_sync_log(handle.log_id, RunStatus.FAILED.value, describe_error(e))
            raise
        self.store.finish_sync_log(handle.log_id, RunStatus.SUCCESS.value, handle.message)
