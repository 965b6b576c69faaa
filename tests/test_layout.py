from __future__ import annotations

import asyncio

from tmux_crew.tmux.client import FakeTmuxClient, TmuxCommandError
from tmux_crew.tmux.layout import LayoutStabilizer, LayoutState


def width_responder(width: str = "120"):
    def respond(args: tuple[str, ...]):
        if args[0] == "display-message":
            return width + "\n"
        return None

    return respond


def test_rapid_requests_coalesce_into_one_run() -> None:
    client = FakeTmuxClient(width_responder())

    async def scenario() -> LayoutStabilizer:
        stabilizer = LayoutStabilizer(client, "crew-lead", "%0", debounce_ms=20)
        for _ in range(5):
            stabilizer.request_layout()
        assert stabilizer.is_pending
        await asyncio.sleep(0.2)
        return stabilizer

    stabilizer = asyncio.run(scenario())

    assert stabilizer.run_count == 1
    assert stabilizer.state is LayoutState.IDLE
    assert client.calls == [
        ("select-layout", "-t", "crew-lead", "main-vertical"),
        ("display-message", "-p", "-t", "crew-lead", "#{window_width}"),
        ("set-window-option", "-t", "crew-lead", "main-pane-width", "60"),
        ("select-layout", "-t", "crew-lead", "main-vertical"),
        ("select-pane", "-t", "%0"),
    ]


def test_requests_during_run_cause_exactly_one_follow_up() -> None:
    client = FakeTmuxClient(width_responder(), delay_s=0.02)

    async def scenario() -> LayoutStabilizer:
        stabilizer = LayoutStabilizer(client, "crew-lead", "%0", debounce_ms=10)
        stabilizer.request_layout()
        await asyncio.sleep(0.04)
        assert stabilizer.is_running
        for _ in range(3):
            stabilizer.request_layout()
        assert stabilizer.queued
        await asyncio.sleep(0.6)
        return stabilizer

    stabilizer = asyncio.run(scenario())

    assert stabilizer.run_count == 2
    assert len(client.commands("select-pane")) == 2


def test_failed_steps_do_not_abort_the_run() -> None:
    def respond(args: tuple[str, ...]):
        if args[0] in {"select-layout", "display-message"}:
            raise TmuxCommandError("boom", args=args)
        return None

    client = FakeTmuxClient(respond)
    stabilizer = LayoutStabilizer(client, "crew-lead", "%0")

    asyncio.run(stabilizer.flush())

    assert client.commands("select-pane") == [("select-pane", "-t", "%0")]
    assert client.commands("set-window-option") == []
    assert stabilizer.run_count == 1


def test_narrow_window_skips_pane_width() -> None:
    client = FakeTmuxClient(width_responder("30"))
    stabilizer = LayoutStabilizer(client, "crew-lead", "%0")

    asyncio.run(stabilizer.flush())

    assert client.commands("set-window-option") == []
    assert len(client.commands("select-layout")) == 1


def test_flush_cancels_pending_timer_and_runs_now() -> None:
    client = FakeTmuxClient(width_responder())

    async def scenario() -> LayoutStabilizer:
        stabilizer = LayoutStabilizer(client, "crew-lead", "%0", debounce_ms=50)
        stabilizer.request_layout()
        await stabilizer.flush()
        assert stabilizer.run_count == 1
        await asyncio.sleep(0.1)
        return stabilizer

    stabilizer = asyncio.run(scenario())

    assert stabilizer.run_count == 1


def test_flush_during_run_waits_for_follow_up() -> None:
    client = FakeTmuxClient(width_responder(), delay_s=0.01)

    async def scenario() -> int:
        stabilizer = LayoutStabilizer(client, "crew-lead", "%0", debounce_ms=10)
        first = asyncio.create_task(stabilizer.flush())
        await asyncio.sleep(0.005)
        assert stabilizer.is_running
        await stabilizer.flush()
        await first
        return stabilizer.run_count

    assert asyncio.run(scenario()) == 2


def test_dispose_resolves_waiters_and_blocks_new_runs() -> None:
    client = FakeTmuxClient(width_responder(), delay_s=0.03)

    async def scenario() -> LayoutStabilizer:
        stabilizer = LayoutStabilizer(client, "crew-lead", "%0", debounce_ms=10)
        first = asyncio.create_task(stabilizer.flush())
        await asyncio.sleep(0.01)
        waiter = asyncio.create_task(stabilizer.flush())
        await asyncio.sleep(0.01)
        stabilizer.dispose()
        await asyncio.wait_for(waiter, timeout=1)
        await first
        stabilizer.request_layout()
        assert not stabilizer.is_pending
        await asyncio.sleep(0.05)
        return stabilizer

    stabilizer = asyncio.run(scenario())

    assert stabilizer.state is LayoutState.DISPOSED
    assert stabilizer.run_count == 1


def test_dispose_cancels_pending_timer() -> None:
    client = FakeTmuxClient(width_responder())

    async def scenario() -> LayoutStabilizer:
        stabilizer = LayoutStabilizer(client, "crew-lead", "%0", debounce_ms=10)
        stabilizer.request_layout()
        stabilizer.dispose()
        await asyncio.sleep(0.05)
        await stabilizer.flush()
        return stabilizer

    stabilizer = asyncio.run(scenario())

    assert stabilizer.run_count == 0
    assert client.calls == []
