"""
Debounced Preview Dispatcher.

Per stage:

    idle -> scheduled -> in_flight -> done | cancelled | errored
              ^    |
              +----+  (another edit inside the window restarts the timer)

Each edit restarts the stage's timer. When the timer fires the previous request
(if any) is cancelled, a fresh token is taken from a session-wide serial, the
readiness store is told about it, and the engine call starts. Only the holder of
the current token may write results.
"""

import asyncio
import enum
import hashlib
import itertools
import json
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from ..config import settings
from ..errors import PreviewTransportError
from .readiness import ReadinessStore

logger = logging.getLogger(__name__)


class DispatchState(str, enum.Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    IN_FLIGHT = "in_flight"
    DONE = "done"
    CANCELLED = "cancelled"
    ERRORED = "errored"


@dataclass
class _StageSlot:
    state: DispatchState = DispatchState.IDLE
    timer: Optional[asyncio.Task] = None
    request: Optional[asyncio.Task] = None
    token: Optional[int] = None
    dispatched: int = 0


def payload_fingerprint(payload: dict) -> str:
    encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha1(encoded).hexdigest()


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, asyncio.TimeoutError):
        return True
    # Engine said no (4xx): asking again will not change its mind
    status = getattr(exc, "status_code", None)
    return status is None or status >= 500


class PreviewDispatcher:
    def __init__(
        self,
        engine,
        readiness: ReadinessStore,
        build_payload: Callable[[str], dict],
        can_preview: Callable[[str, dict], bool],
        debounce_ms: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_backoff_ms: Optional[int] = None,
    ):
        self.engine = engine
        self.readiness = readiness
        self.build_payload = build_payload
        self.can_preview = can_preview
        self.debounce = (settings.PREVIEW_DEBOUNCE_MS if debounce_ms is None else debounce_ms) / 1000
        self.timeout = settings.PREVIEW_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        self.max_retries = settings.PREVIEW_MAX_RETRIES if max_retries is None else max_retries
        self.retry_backoff = (settings.PREVIEW_RETRY_BACKOFF_MS if retry_backoff_ms is None
                              else retry_backoff_ms) / 1000
        self._serial = itertools.count(1)
        self._slots: dict[str, _StageSlot] = {}

    # --- Public API ---

    def schedule(self, stage_id: str):
        """(Re)start the stage's debounce timer. Must be called on the event loop."""
        slot = self._slot(stage_id)
        if slot.timer is not None and not slot.timer.done():
            slot.timer.cancel()
        slot.timer = asyncio.get_running_loop().create_task(self._debounce(stage_id))
        slot.state = DispatchState.SCHEDULED

    def cancel(self, stage_id: str):
        """Drop a pending timer and in-flight request; late results are discarded."""
        slot = self._slots.get(stage_id)
        if slot is None:
            return
        had_work = False
        for task in (slot.timer, slot.request):
            if task is not None and not task.done():
                task.cancel()
                had_work = True
        slot.timer = None
        slot.request = None
        slot.token = None
        self.readiness.revoke(stage_id)
        if had_work:
            slot.state = DispatchState.CANCELLED
            logger.debug("Cancelled preview work for %s", stage_id)

    def cancel_all(self):
        for stage_id in list(self._slots):
            self.cancel(stage_id)

    def state(self, stage_id: str) -> DispatchState:
        return self._slot(stage_id).state

    def dispatched_count(self, stage_id: str) -> int:
        return self._slot(stage_id).dispatched

    def pending(self) -> list[asyncio.Task]:
        tasks = []
        for slot in self._slots.values():
            tasks.extend(t for t in (slot.timer, slot.request) if t is not None and not t.done())
        return tasks

    async def settle(self):
        """Wait until no timer or request is outstanding."""
        while True:
            pending = self.pending()
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # --- Internals ---

    def _slot(self, stage_id: str) -> _StageSlot:
        return self._slots.setdefault(stage_id, _StageSlot())

    async def _debounce(self, stage_id: str):
        await asyncio.sleep(self.debounce)
        self._fire(stage_id)

    def _fire(self, stage_id: str):
        slot = self._slot(stage_id)
        slot.timer = None

        payload = self.build_payload(stage_id)
        if not self.can_preview(stage_id, payload):
            logger.debug("Preview precondition not met for %s, skipping", stage_id)
            slot.state = DispatchState.IDLE
            return

        if slot.request is not None and not slot.request.done():
            slot.request.cancel()

        token = next(self._serial)
        slot.token = token
        slot.dispatched += 1
        self.readiness.mark_loading(stage_id, token, payload_fingerprint(payload))
        slot.request = asyncio.get_running_loop().create_task(self._run(stage_id, token, payload))
        slot.state = DispatchState.IN_FLIGHT
        logger.debug("Dispatched preview for %s (token %s, %d fields)", stage_id, token, len(payload))

    def _is_current(self, stage_id: str, token: int) -> bool:
        return self._slot(stage_id).token == token

    async def _run(self, stage_id: str, token: int, payload: dict):
        slot = self._slot(stage_id)
        try:
            result = await self._call_with_retry(stage_id, token, payload)
        except asyncio.CancelledError:
            if self._is_current(stage_id, token):
                slot.state = DispatchState.CANCELLED
            raise
        except (PreviewTransportError, asyncio.TimeoutError) as e:
            message = str(e) or f"Preview timed out after {self.timeout}s"
            self._fail(stage_id, token, message)
            return
        except Exception as e:
            # Preview failures never leave the dispatcher
            logger.exception("Unexpected preview failure for %s", stage_id)
            self._fail(stage_id, token, str(e))
            return

        if self.readiness.merge(stage_id, token, result.get("sections") or {}):
            if self._is_current(stage_id, token):
                slot.state = DispatchState.DONE

    async def _call_with_retry(self, stage_id: str, token: int, payload: dict) -> dict:
        for attempt in range(self.max_retries + 1):
            try:
                return await asyncio.wait_for(self.engine.preview(stage_id, payload), self.timeout)
            except (PreviewTransportError, asyncio.TimeoutError) as e:
                last_attempt = attempt >= self.max_retries
                if last_attempt or not _retryable(e) or not self._is_current(stage_id, token):
                    raise
                logger.info("Preview for %s failed (%s), retrying in %.2fs",
                            stage_id, e or "timeout", self.retry_backoff)
                await asyncio.sleep(self.retry_backoff)

    def _fail(self, stage_id: str, token: int, message: str):
        if not self._is_current(stage_id, token):
            logger.debug("Superseded preview for %s failed, ignoring: %s", stage_id, message)
            return
        logger.warning("Preview for %s failed: %s", stage_id, message)
        self.readiness.mark_error(stage_id, token, message)
        self._slot(stage_id).state = DispatchState.ERRORED
