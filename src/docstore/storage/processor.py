"""
Action Processor - materializes staged publish Actions.

State machine per Action:

    pending → active → completed
                     ↘ failed

A run picks up to `limit` of the oldest pending Actions and for each one:
1. claims it (re-read, then a pending row carrying claimed_by + lease_expires_at;
   the first claim appended after the observed state wins)
2. moves it to active
3. appends one things row per document
4. moves it to completed with result={"things": n, "processedAt": ts}

Any error after the claim moves the Action to failed with the message kept;
a claim that errors leaves the Action pending for a later run. One failing
Action never stops the others and nothing is retried automatically.
"""

import threading
import uuid
from collections import defaultdict

from docstore.core.config import settings, get_logger
from docstore.core.errors import DocstoreError
from docstore.core.types import Action, ActionStatus, ProcessResult
from docstore.storage.analytical import AnalyticalAdapter, now_utc

logger = get_logger("storage.processor")

# One lock per namespace, shared by every Processor in this process
_ns_locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)
_ns_locks_guard = threading.Lock()


def _namespace_lock(ns: str) -> threading.Lock:
    with _ns_locks_guard:
        return _ns_locks[ns]


class Processor:
    """
    Processes pending Actions of an AnalyticalAdapter.

    Usage:
        processor = Processor(adapter)
        result = processor.run(ns="acme")
    """

    def __init__(
        self,
        adapter: AnalyticalAdapter,
        lease_seconds: int | None = None,
        processor_id: str | None = None,
    ):
        self.adapter = adapter
        self.lease_seconds = lease_seconds if lease_seconds is not None else settings.processor_lease_seconds
        self.processor_id = processor_id or f"processor-{uuid.uuid4().hex[:12]}"

    def run(self, ns: str | None = None, limit: int | None = None) -> ProcessResult:
        """
        Process up to limit pending Actions, optionally only in ns.

        Never raises for an Action failure; failures are reported in the
        returned ProcessResult and on the Action itself.
        """
        limit = limit if limit is not None else settings.processor_batch_limit
        lock = _namespace_lock(ns or "*")

        with lock:
            pending = self.adapter.list_actions(ns=ns, status=ActionStatus.PENDING, limit=limit)
            result = ProcessResult()
            if not pending:
                return result

            logger.info(f"Processing {len(pending)} pending actions{f' in {ns}' if ns else ''}")
            for action in pending:
                self._process_one(action, result)

        logger.info(
            f"Run complete: {result.succeeded} succeeded, {result.failed} failed, "
            f"{result.skipped} skipped, {result.things} things"
        )
        return result

    def _process_one(self, action: Action, result: ProcessResult) -> None:
        try:
            claimed = self.adapter.claim_action(action, self.processor_id, self.lease_seconds)
        except Exception as e:
            # Still pending; the next run retries the claim
            result.skipped += 1
            result.errors.append(f"Action {action.id}: claim failed: {e}")
            logger.error(f"Could not claim action {action.id}: {e}")
            return

        if claimed is None:
            logger.debug(f"Skipping action {action.id}: claimed elsewhere or no longer pending")
            result.skipped += 1
            return

        result.processed += 1
        active = None
        try:
            active = self.adapter.transition_action(claimed, ActionStatus.ACTIVE, started_at=now_utc())
            count = self.adapter.append_things(active)
            now = now_utc()
            self.adapter.transition_action(
                active,
                ActionStatus.COMPLETED,
                progress=active.total,
                completed_at=now,
                result={"things": count, "processedAt": now.isoformat()},
            )
            result.succeeded += 1
            result.things += count
            logger.info(f"Action {action.id} completed with {count} things")
        except Exception as e:
            message = str(e)
            result.failed += 1
            result.errors.append(f"Action {action.id}: {message}")
            logger.error(f"Action {action.id} failed: {message}")
            if active is not None:
                self._mark_failed(active, message, result)

    def _mark_failed(self, action: Action, message: str, result: ProcessResult) -> None:
        try:
            self.adapter.transition_action(action, ActionStatus.FAILED, error=message, completed_at=now_utc())
        except DocstoreError as e:
            # The Action stays active and needs manual repair
            logger.error(f"Could not record failure of action {action.id}: {e}")
            result.errors.append(f"Action {action.id}: failure not recorded: {e}")
