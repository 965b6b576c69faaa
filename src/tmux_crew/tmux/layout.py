"""Debounced re-tiling of the leader's tmux window."""

from __future__ import annotations

import asyncio
import enum
import logging

from ..errors import CrewError
from .client import TmuxClient

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_MS = 150
MIN_SPLIT_WIDTH = 40


class LayoutState(enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    RUNNING = "running"
    DISPOSED = "disposed"


class LayoutStabilizer:
    """Coalesce bursts of layout requests into as few recomputes as possible.

    Requests made while a recompute runs set a ``queued`` flag, which causes
    exactly one follow-up debounce cycle once the run finishes. Must be used
    from inside a running event loop.
    """

    def __init__(
        self,
        client: TmuxClient,
        session_target: str,
        leader_pane_id: str,
        *,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
    ) -> None:
        self._client = client
        self.session_target = session_target
        self.leader_pane_id = leader_pane_id
        self._debounce_s = debounce_ms / 1000
        self._state = LayoutState.IDLE
        self._queued = False
        self._timer: asyncio.TimerHandle | None = None
        self._task: asyncio.Task[None] | None = None
        self._waiters: list[asyncio.Future[None]] = []
        self._run_count = 0

    @property
    def state(self) -> LayoutState:
        return self._state

    @property
    def is_pending(self) -> bool:
        return self._state is LayoutState.PENDING

    @property
    def is_running(self) -> bool:
        return self._state is LayoutState.RUNNING

    @property
    def queued(self) -> bool:
        return self._queued

    @property
    def run_count(self) -> int:
        return self._run_count

    def request_layout(self) -> None:
        if self._state is LayoutState.DISPOSED:
            return
        if self._state is LayoutState.RUNNING:
            self._queued = True
            return
        self._arm()

    async def flush(self) -> None:
        """Run now, or wait for the in-flight run and its follow-up."""

        if self._state is LayoutState.DISPOSED:
            return
        if self._state is LayoutState.RUNNING:
            self._queued = True
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            await waiter
            return
        self._cancel_timer()
        self._state = LayoutState.IDLE
        await self._apply_layout()

    def dispose(self) -> None:
        self._cancel_timer()
        self._state = LayoutState.DISPOSED
        self._queued = False
        self._resolve_waiters()

    def _arm(self) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._debounce_s, self._on_timer)
        self._state = LayoutState.PENDING

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        if self._state is not LayoutState.PENDING:
            return
        self._task = asyncio.get_running_loop().create_task(self._apply_layout())

    def _resolve_waiters(self) -> None:
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    async def _apply_layout(self) -> None:
        if self._state in (LayoutState.RUNNING, LayoutState.DISPOSED):
            return
        self._state = LayoutState.RUNNING
        try:
            await self._recompute()
        finally:
            self._run_count += 1
            if self._state is LayoutState.DISPOSED:
                self._resolve_waiters()
            elif self._queued:
                self._queued = False
                self._arm()
            else:
                self._state = LayoutState.IDLE
                self._resolve_waiters()

    async def _step(self, *args: str) -> str | None:
        try:
            result = await self._client.run_async(*args)
            return result.check().stdout
        except CrewError as exc:
            logger.debug("Layout step failed", extra={"step": args[0], "error": str(exc)})
            return None

    async def _recompute(self) -> None:
        target = self.session_target
        await self._step("select-layout", "-t", target, "main-vertical")

        raw_width = await self._step("display-message", "-p", "-t", target, "#{window_width}")
        try:
            width = int((raw_width or "").strip())
        except ValueError:
            width = 0
        if width >= MIN_SPLIT_WIDTH:
            await self._step("set-window-option", "-t", target, "main-pane-width", str(width // 2))
            await self._step("select-layout", "-t", target, "main-vertical")

        await self._step("select-pane", "-t", self.leader_pane_id)


__all__ = ["DEFAULT_DEBOUNCE_MS", "LayoutStabilizer", "LayoutState"]
