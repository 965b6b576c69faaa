from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from tmux_crew.storage.files import TeamPaths, read_lines
from tmux_crew.storage.mailbox import LEAD_MAILBOX, Mailbox, ProtocolMailbox
from tmux_crew.storage.models import MailboxMessage
from tmux_crew.storage.registry import WorkerRegistry

TEAM = "alpha"


def msg(kind: str, **payload) -> MailboxMessage:
    return MailboxMessage(type=kind, payload=payload)


def outbox_path(state: Path, worker: str) -> Path:
    return TeamPaths(state, TEAM).outbox(worker)


def test_read_new_outbox_consumes_each_message_once(tmp_path: Path) -> None:
    mailbox = Mailbox(tmp_path)
    mailbox.append_outbox(TEAM, "w1", msg("task_complete", taskId="1"))
    mailbox.append_outbox(TEAM, "w1", msg("idle"))

    first = mailbox.read_new_outbox(TEAM, "w1")
    second = mailbox.read_new_outbox(TEAM, "w1")

    assert [m.type for m in first] == ["task_complete", "idle"]
    assert first[0].payload == {"taskId": "1"}
    assert second == []
    cursor = json.loads(TeamPaths(tmp_path, TEAM).outbox_cursor("w1").read_text())
    assert cursor == {"bytesRead": outbox_path(tmp_path, "w1").stat().st_size}


def test_cursor_survives_new_mailbox_instance(tmp_path: Path) -> None:
    Mailbox(tmp_path).append_outbox(TEAM, "w1", msg("one"))
    Mailbox(tmp_path).read_new_outbox(TEAM, "w1")
    Mailbox(tmp_path).append_outbox(TEAM, "w1", msg("two"))

    assert [m.type for m in Mailbox(tmp_path).read_new_outbox(TEAM, "w1")] == ["two"]


def test_partial_line_waits_for_newline(tmp_path: Path) -> None:
    mailbox = Mailbox(tmp_path)
    mailbox.append_outbox(TEAM, "w1", msg("one"))
    path = outbox_path(tmp_path, "w1")
    with path.open("a", encoding="utf-8") as handle:
        handle.write('{"type": "tw')

    assert [m.type for m in mailbox.read_new_outbox(TEAM, "w1")] == ["one"]

    with path.open("a", encoding="utf-8") as handle:
        handle.write('o"}\n')

    assert [m.type for m in mailbox.read_new_outbox(TEAM, "w1")] == ["two"]


def test_malformed_lines_are_skipped(tmp_path: Path) -> None:
    path = outbox_path(tmp_path, "w1")
    path.parent.mkdir(parents=True)
    path.write_text('not json\n{"type": "ok"}\n\n[1, 2]\n{"payload": {}}\n', encoding="utf-8")

    mailbox = Mailbox(tmp_path)

    assert [m.type for m in mailbox.read_new_outbox(TEAM, "w1")] == ["ok"]
    assert mailbox.read_new_outbox(TEAM, "w1") == []


def test_truncated_file_resets_cursor(tmp_path: Path) -> None:
    mailbox = Mailbox(tmp_path)
    for index in range(3):
        mailbox.append_outbox(TEAM, "w1", msg(f"m{index}"))
    mailbox.read_new_outbox(TEAM, "w1")

    outbox_path(tmp_path, "w1").write_text('{"type": "fresh"}\n', encoding="utf-8")

    assert [m.type for m in mailbox.read_new_outbox(TEAM, "w1")] == ["fresh"]


def test_read_is_capped_per_call(tmp_path: Path) -> None:
    mailbox = Mailbox(tmp_path, max_read_bytes=100)
    for index in range(3):
        mailbox.append_outbox(TEAM, "w1", msg(f"m{index}"))
    lines = outbox_path(tmp_path, "w1").read_bytes().splitlines(keepends=True)
    assert all(50 < len(line) <= 100 for line in lines)

    batches = [mailbox.read_new_outbox(TEAM, "w1") for _ in range(4)]

    assert [[m.type for m in batch] for batch in batches] == [["m0"], ["m1"], ["m2"], []]


def test_missing_outbox_returns_nothing(tmp_path: Path) -> None:
    assert Mailbox(tmp_path).read_new_outbox(TEAM, "ghost") == []


def test_read_all_team_outbox_groups_by_worker(tmp_path: Path) -> None:
    mailbox = Mailbox(tmp_path)
    mailbox.append_outbox(TEAM, "w1", msg("a"))
    mailbox.append_outbox(TEAM, "w2", msg("b"))
    mailbox.append_outbox(TEAM, "w2", msg("c"))
    mailbox.append_outbox(TEAM, "w3", msg("d"))
    mailbox.read_new_outbox(TEAM, "w3")

    grouped = mailbox.read_all_team_outbox(TEAM)

    assert {worker: [m.type for m in messages] for worker, messages in grouped.items()} == {
        "w1": ["a"],
        "w2": ["b", "c"],
    }


def test_peek_does_not_move_cursor(tmp_path: Path) -> None:
    mailbox = Mailbox(tmp_path)
    for index in range(12):
        mailbox.append_outbox(TEAM, "w1", msg(f"m{index}"))

    peeked = mailbox.peek_recent_outbox(TEAM, "w1")

    assert [m.type for m in peeked] == [f"m{index}" for index in range(2, 12)]
    assert not TeamPaths(tmp_path, TEAM).outbox_cursor("w1").exists()
    assert len(mailbox.read_new_outbox(TEAM, "w1")) == 12


def test_rotate_outbox_keeps_newest_half(tmp_path: Path) -> None:
    mailbox = Mailbox(tmp_path)
    for index in range(10):
        mailbox.append_outbox(TEAM, "w1", msg(f"m{index}"))

    assert mailbox.rotate_outbox(TEAM, "w1", max_lines=4) is True
    assert mailbox.rotate_outbox(TEAM, "w1", max_lines=4) is False
    assert [m.type for m in mailbox.read_new_outbox(TEAM, "w1")] == ["m8", "m9"]


def test_rotate_outbox_does_not_redeliver_read_messages(tmp_path: Path) -> None:
    mailbox = Mailbox(tmp_path)
    for index in range(6):
        mailbox.append_outbox(TEAM, "w1", msg(f"m{index}"))
    assert len(mailbox.read_new_outbox(TEAM, "w1")) == 6

    assert mailbox.rotate_outbox(TEAM, "w1", max_lines=4) is True

    assert mailbox.read_new_outbox(TEAM, "w1") == []
    mailbox.append_outbox(TEAM, "w1", msg("m6"))
    assert [m.type for m in mailbox.read_new_outbox(TEAM, "w1")] == ["m6"]


def test_rotate_outbox_keeps_unread_messages_unread(tmp_path: Path) -> None:
    mailbox = Mailbox(tmp_path)
    for index in range(5):
        mailbox.append_outbox(TEAM, "w1", msg(f"m{index}"))
    mailbox.read_new_outbox(TEAM, "w1")
    mailbox.append_outbox(TEAM, "w1", msg("m5"))

    assert mailbox.rotate_outbox(TEAM, "w1", max_lines=4) is True

    assert [m.type for m in mailbox.read_new_outbox(TEAM, "w1")] == ["m5"]
    assert len(read_lines(outbox_path(tmp_path, "w1"))) == 2


def test_rotate_outbox_retries_when_worker_appends_meanwhile(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    mailbox = Mailbox(tmp_path)
    for index in range(6):
        mailbox.append_outbox(TEAM, "w1", msg(f"m{index}"))
    real_fsync = os.fsync
    appended = []

    def fsync_with_concurrent_append(fd: int) -> None:
        if not appended:
            appended.append(True)
            mailbox.append_outbox(TEAM, "w1", msg("late"))
        real_fsync(fd)

    monkeypatch.setattr(os, "fsync", fsync_with_concurrent_append)
    assert mailbox.rotate_outbox(TEAM, "w1", max_lines=4) is True
    monkeypatch.undo()

    assert [m.type for m in mailbox.read_new_outbox(TEAM, "w1")] == ["m5", "late"]


def test_inbox_round_trip(tmp_path: Path) -> None:
    mailbox = Mailbox(tmp_path)
    mailbox.send_inbox(TEAM, "w1", msg("message", content="hi"))

    assert [m.payload for m in mailbox.read_new_inbox(TEAM, "w1")] == [{"content": "hi"}]
    assert mailbox.read_new_inbox(TEAM, "w1") == []
    assert TeamPaths(tmp_path, TEAM).inbox_cursor("w1").exists()


def test_shutdown_and_drain_signals(tmp_path: Path) -> None:
    mailbox = Mailbox(tmp_path)
    assert mailbox.check_shutdown_signal(TEAM, "w1") is None

    mailbox.write_shutdown_signal(TEAM, "w1", "req-1", "done for today")
    mailbox.write_drain_signal(TEAM, "w1", "req-2", "finish current task")

    shutdown = mailbox.check_shutdown_signal(TEAM, "w1")
    assert shutdown is not None
    assert (shutdown.request_id, shutdown.reason) == ("req-1", "done for today")
    raw = json.loads(TeamPaths(tmp_path, TEAM).signal("w1", "shutdown").read_text())
    assert raw["requestId"] == "req-1"
    assert mailbox.check_drain_signal(TEAM, "w1").request_id == "req-2"

    mailbox.delete_shutdown_signal(TEAM, "w1")
    mailbox.delete_drain_signal(TEAM, "w1")
    assert mailbox.check_shutdown_signal(TEAM, "w1") is None
    assert mailbox.check_drain_signal(TEAM, "w1") is None


def test_cleanup_worker_files(tmp_path: Path) -> None:
    mailbox = Mailbox(tmp_path)
    mailbox.append_outbox(TEAM, "w1", msg("a"))
    mailbox.read_new_outbox(TEAM, "w1")
    mailbox.send_inbox(TEAM, "w1", msg("b"))
    mailbox.write_shutdown_signal(TEAM, "w1", "r", "bye")

    mailbox.cleanup_worker_files(TEAM, "w1")

    paths = TeamPaths(tmp_path, TEAM)
    assert not paths.outbox("w1").exists()
    assert not paths.outbox_cursor("w1").exists()
    assert not paths.inbox("w1").exists()
    assert not paths.signal("w1", "shutdown").exists()


@pytest.fixture
def protocol_state(tmp_path: Path) -> Path:
    WorkerRegistry(tmp_path).enable_protocol(TEAM)
    return tmp_path


def test_protocol_outbox_marks_messages_delivered(protocol_state: Path) -> None:
    mailbox = Mailbox(protocol_state)
    mailbox.append_outbox(TEAM, "w1", msg("task_complete", taskId="3"))
    mailbox.append_outbox(TEAM, "w2", msg("idle"))

    first = mailbox.read_new_outbox(TEAM, "w1")

    assert [(m.type, m.payload) for m in first] == [("task_complete", {"taskId": "3"})]
    assert mailbox.read_new_outbox(TEAM, "w1") == []
    assert [m.type for m in mailbox.read_new_outbox(TEAM, "w2")] == ["idle"]
    assert not outbox_path(protocol_state, "w1").exists()


def test_protocol_unparseable_body_becomes_error(protocol_state: Path) -> None:
    ProtocolMailbox(protocol_state).send(TEAM, "w1", LEAD_MAILBOX, "message", "plain words")

    messages = Mailbox(protocol_state).read_new_outbox(TEAM, "w1")

    assert len(messages) == 1
    assert messages[0].type == "error"
    assert messages[0].payload == {"message": "plain words"}


def test_protocol_failed_delivery_mark_means_redelivery(
    protocol_state: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    protocol = ProtocolMailbox(protocol_state)
    mailbox = Mailbox(protocol_state, protocol=protocol)
    mailbox.append_outbox(TEAM, "w1", msg("a"))

    def broken(*args, **kwargs):
        raise OSError("read-only filesystem")

    monkeypatch.setattr(protocol, "mark_delivered", broken)
    assert [m.type for m in mailbox.read_new_outbox(TEAM, "w1")] == ["a"]

    monkeypatch.undo()
    assert [m.type for m in mailbox.read_new_outbox(TEAM, "w1")] == ["a"]
    assert mailbox.read_new_outbox(TEAM, "w1") == []


def test_protocol_team_read_and_peek(protocol_state: Path) -> None:
    mailbox = Mailbox(protocol_state)
    mailbox.append_outbox(TEAM, "w1", msg("a"))
    mailbox.append_outbox(TEAM, "w2", msg("b"))

    grouped = mailbox.read_all_team_outbox(TEAM)

    assert {worker: [m.type for m in messages] for worker, messages in grouped.items()} == {
        "w1": ["a"],
        "w2": ["b"],
    }
    assert mailbox.read_all_team_outbox(TEAM) == {}
    assert [m.type for m in mailbox.peek_recent_outbox(TEAM, "w1")] == ["a"]


def test_protocol_inbox_and_prune(protocol_state: Path) -> None:
    protocol = ProtocolMailbox(protocol_state)
    mailbox = Mailbox(protocol_state, protocol=protocol)
    mailbox.send_inbox(TEAM, "w1", msg("message", content="hi"))

    assert [m.payload["content"] for m in mailbox.read_new_inbox(TEAM, "w1")] == ["hi"]
    assert protocol.prune_delivered(TEAM, "w1") == 1
    assert protocol.list_messages(TEAM, "w1") == []


def test_read_all_inbox_ignores_cursor(tmp_path: Path) -> None:
    mailbox = Mailbox(tmp_path)
    mailbox.send_inbox(TEAM, "w1", msg("a"))
    mailbox.read_new_inbox(TEAM, "w1")
    mailbox.send_inbox(TEAM, "w1", msg("b"))

    assert [m.type for m in mailbox.read_all_inbox(TEAM, "w1")] == ["a", "b"]
    assert [m.type for m in mailbox.read_new_inbox(TEAM, "w1")] == ["b"]
    assert mailbox.read_all_inbox(TEAM, "ghost") == []


def test_rotate_inbox_by_size(tmp_path: Path) -> None:
    mailbox = Mailbox(tmp_path)
    for index in range(8):
        mailbox.send_inbox(TEAM, "w1", msg(f"m{index}"))
    mailbox.read_new_inbox(TEAM, "w1")
    mailbox.send_inbox(TEAM, "w1", msg("m8"))
    size = TeamPaths(tmp_path, TEAM).inbox("w1").stat().st_size

    assert mailbox.rotate_inbox(TEAM, "w1", max_size_bytes=size) is False
    assert mailbox.rotate_inbox(TEAM, "w1", max_size_bytes=size - 1) is True

    assert [m.type for m in mailbox.read_all_inbox(TEAM, "w1")] == ["m5", "m6", "m7", "m8"]
    assert [m.type for m in mailbox.read_new_inbox(TEAM, "w1")] == ["m8"]


def test_clear_inbox(tmp_path: Path) -> None:
    mailbox = Mailbox(tmp_path)
    mailbox.send_inbox(TEAM, "w1", msg("a"))
    mailbox.read_new_inbox(TEAM, "w1")

    mailbox.clear_inbox(TEAM, "w1")

    paths = TeamPaths(tmp_path, TEAM)
    assert paths.inbox("w1").read_bytes() == b""
    assert json.loads(paths.inbox_cursor("w1").read_text()) == {"bytesRead": 0}
    mailbox.send_inbox(TEAM, "w1", msg("b"))
    assert [m.type for m in mailbox.read_new_inbox(TEAM, "w1")] == ["b"]


def test_protocol_clear_and_rotate_inbox(protocol_state: Path) -> None:
    protocol = ProtocolMailbox(protocol_state)
    mailbox = Mailbox(protocol_state, protocol=protocol)
    mailbox.send_inbox(TEAM, "w1", msg("a"))
    mailbox.send_inbox(TEAM, "w1", msg("b"))

    assert mailbox.rotate_inbox(TEAM, "w1", max_size_bytes=0) is False
    assert [m.type for m in mailbox.read_all_inbox(TEAM, "w1")] == ["a", "b"]
    mailbox.read_new_inbox(TEAM, "w1")
    assert mailbox.rotate_inbox(TEAM, "w1", max_size_bytes=0) is True

    mailbox.send_inbox(TEAM, "w1", msg("c"))
    mailbox.clear_inbox(TEAM, "w1")

    assert protocol.list_messages(TEAM, "w1") == []
    assert mailbox.read_new_inbox(TEAM, "w1") == []
