"""Best-effort audit trail.

Writes are scheduled as background tasks; a failed write is logged as a
warning and dropped so it never fails the operation being audited.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Protocol, Set

from schoolgate.logging import get_logger
from schoolgate.service.sessions import RequestMetadata
from schoolgate.storage.models import ActivityLogEntry

logger = get_logger(__name__)


class ActivitySink(Protocol):
    def append_activity(self, entry: ActivityLogEntry) -> ActivityLogEntry: ...


class ActivityRecorder:
    def __init__(self, sink: ActivitySink) -> None:
        self.sink = sink
        # Strong references so pending writes are not garbage collected
        self._pending: Set[asyncio.Task] = set()

    def _write(self, entry: ActivityLogEntry) -> None:
        try:
            self.sink.append_activity(entry)
        except Exception as exc:
            logger.warning(
                "activity_log_failed",
                user_id=entry.user_id,
                action=entry.action,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def _run(self, entry: ActivityLogEntry) -> None:
        self._write(entry)

    def record(
        self,
        user_id: str,
        action: str,
        entity: str = "user",
        entity_id: Optional[str] = None,
        *,
        metadata: Optional[Dict[str, Any]] = None,
        request: Optional[RequestMetadata] = None,
    ) -> None:
        """Schedule an audit entry without waiting for it."""
        request = request or RequestMetadata()
        entry = ActivityLogEntry.new(
            user_id,
            action,
            entity,
            entity_id if entity_id is not None else user_id,
            metadata=metadata,
            ip_address=request.ip_address,
            user_agent=request.user_agent,
        )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write(entry)
            return
        task = loop.create_task(self._run(entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for scheduled writes; used by tests and shutdown."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
