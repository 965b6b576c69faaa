"""Worker <-> leader mailboxes.

Two transports exist. The legacy transport appends JSON lines to one file
per worker and tracks a byte cursor for the reader. The protocol transport
stores every message as its own file in the recipient's mailbox directory
and marks messages delivered instead of moving a cursor. A team uses the
protocol transport once its ``state_version`` marker exists.
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from pathlib import Path
from datetime import datetime
from typing import Any, Callable, Literal

from pydantic import ValidationError

from .files import TeamPaths, append_jsonl, atomic_write_json, read_json, read_lines, tail_lines
from .models import Cursor, MailboxMessage, ProtocolMessage, ShutdownSignal, utc_now
from .registry import has_protocol_marker

logger = logging.getLogger(__name__)

MAX_READ_BYTES = 10 * 1024 * 1024
LEAD_MAILBOX = "lead"
DEFAULT_PEEK_LIMIT = 10
ROTATE_ATTEMPTS = 3

SignalKind = Literal["shutdown", "drain"]


def _parse_message(raw: Any) -> MailboxMessage | None:
    if not isinstance(raw, dict):
        return None
    try:
        return MailboxMessage.model_validate(raw)
    except ValidationError:
        return None


def _parse_line(line: bytes | str) -> MailboxMessage | None:
    text = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else line
    text = text.strip()
    if not text:
        return None
    try:
        return _parse_message(json.loads(text))
    except json.JSONDecodeError:
        return None


class CursorStream:
    """Read complete new lines from an append-only JSONL file.

    The cursor file is only ever written by this reader, so whole-file
    atomic replacement is enough to keep it consistent.
    """

    def __init__(self, path: Path, cursor_path: Path, *, max_read_bytes: int = MAX_READ_BYTES) -> None:
        self.path = path
        self.cursor_path = cursor_path
        self._max_read_bytes = max_read_bytes

    def offset(self) -> int:
        raw = read_json(self.cursor_path, default=None)
        if raw is None:
            return 0
        try:
            return Cursor.model_validate(raw).bytes_read
        except ValidationError:
            return 0

    def _save(self, offset: int) -> None:
        atomic_write_json(self.cursor_path, Cursor(bytes_read=offset).to_json())

    def reset(self) -> None:
        self._save(0)

    def rotate(self, *, max_lines: int | None = None, max_size_bytes: int | None = None) -> bool:
        """Drop the oldest half of the file once it exceeds a line or size limit.

        The cursor is moved so that lines already read stay read and unread
        lines stay unread. A writer appending during the rewrite makes the
        attempt start over rather than lose the new line.
        """

        for _ in range(ROTATE_ATTEMPTS):
            try:
                data = self.path.read_bytes()
            except FileNotFoundError:
                return False
            lines = data.splitlines(keepends=True)
            count = sum(1 for line in lines if line.strip())
            if max_lines is not None:
                if count <= max_lines:
                    return False
                keep = max(1, max_lines // 2)
            elif max_size_bytes is not None:
                if len(data) <= max_size_bytes:
                    return False
                keep = max(1, count // 2)
            else:
                return False

            kept: list[bytes] = []
            seen = 0
            for line in reversed(lines):
                if seen == keep:
                    break
                kept.append(line)
                if line.strip():
                    seen += 1
            if seen >= count:
                return False
            content = b"".join(reversed(kept))

            offset = self.offset()
            unread = len(data) - offset if offset <= len(data) else len(data)
            if unread > len(content):
                logger.warning(
                    "Rotation dropped unread mailbox lines", extra={"path": str(self.path)}
                )

            tmp = self.path.with_name(f".{self.path.name}.tmp-{uuid.uuid4().hex[:8]}")
            try:
                with tmp.open("wb") as handle:
                    handle.write(content)
                    handle.flush()
                    os.fsync(handle.fileno())
                if self.path.stat().st_size != len(data):
                    tmp.unlink()
                    continue
                os.replace(tmp, self.path)
            except BaseException:
                tmp.unlink(missing_ok=True)
                raise
            self._save(max(0, len(content) - unread))
            logger.info(
                "Rotated mailbox file",
                extra={"path": str(self.path), "kept": seen, "dropped": count - seen},
            )
            return True

        logger.warning("Mailbox file kept growing, rotation skipped", extra={"path": str(self.path)})
        return False

    def read_new(self) -> list[MailboxMessage]:
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return []

        stored = self.offset()
        offset = stored
        if offset > size:
            logger.info(
                "Mailbox file shrank, resetting cursor",
                extra={"path": str(self.path), "offset": offset, "size": size},
            )
            offset = 0

        to_read = min(size - offset, self._max_read_bytes)
        if to_read <= 0:
            if offset != stored:
                self._save(offset)
            return []

        with self.path.open("rb") as handle:
            handle.seek(offset)
            chunk = handle.read(to_read)

        last_newline = chunk.rfind(b"\n")
        if last_newline == -1:
            if len(chunk) >= self._max_read_bytes:
                # A single line larger than the read cap can never complete.
                logger.warning("Skipping oversized mailbox line", extra={"path": str(self.path)})
                self._save(offset + len(chunk))
            elif offset != stored:
                self._save(offset)
            return []

        complete = chunk[: last_newline + 1]
        messages: list[MailboxMessage] = []
        skipped = 0
        for line in complete.split(b"\n"):
            if not line.strip():
                continue
            message = _parse_line(line)
            if message is None:
                skipped += 1
                continue
            messages.append(message)
        if skipped:
            logger.debug(
                "Skipped malformed mailbox lines", extra={"path": str(self.path), "skipped": skipped}
            )

        self._save(offset + len(complete))
        return messages


class ProtocolMailbox:
    """Per-message files under ``mailbox/<recipient>/``."""

    def __init__(self, state_dir: Path, *, clock: Callable[[], datetime] | None = None) -> None:
        self._state_dir = Path(state_dir)
        self._clock = clock or utc_now

    def _dir(self, team: str, recipient: str) -> Path:
        return TeamPaths(self._state_dir, team).mailbox(recipient)

    def send(
        self, team: str, sender: str, recipient: str, message_type: str, body: str
    ) -> ProtocolMessage:
        created = self._clock()
        message = ProtocolMessage(
            message_id=f"{time.time_ns()}-{uuid.uuid4().hex[:8]}",
            from_worker=sender,
            to_worker=recipient,
            type=message_type,
            body=body,
            created_at=created,
        )
        atomic_write_json(self._dir(team, recipient) / f"{message.message_id}.json", message.to_json())
        return message

    def list_messages(self, team: str, recipient: str) -> list[ProtocolMessage]:
        directory = self._dir(team, recipient)
        if not directory.is_dir():
            return []
        messages: list[ProtocolMessage] = []
        for path in directory.glob("*.json"):
            raw = read_json(path, default=None)
            if not isinstance(raw, dict):
                continue
            try:
                messages.append(ProtocolMessage.model_validate(raw))
            except ValidationError:
                continue
        messages.sort(key=lambda message: (message.created_at, message.message_id))
        return messages

    def mark_delivered(self, team: str, recipient: str, message_id: str) -> None:
        path = self._dir(team, recipient) / f"{message_id}.json"
        raw = read_json(path, default=None)
        if not isinstance(raw, dict):
            raise FileNotFoundError(path)
        message = ProtocolMessage.model_validate(raw)
        message.delivered_at = self._clock()
        atomic_write_json(path, message.to_json())

    def prune_delivered(self, team: str, recipient: str) -> int:
        removed = 0
        for message in self.list_messages(team, recipient):
            if message.delivered_at is None:
                continue
            (self._dir(team, recipient) / f"{message.message_id}.json").unlink(missing_ok=True)
            removed += 1
        return removed


def _from_protocol(message: ProtocolMessage) -> MailboxMessage:
    try:
        parsed = _parse_message(json.loads(message.body))
    except json.JSONDecodeError:
        parsed = None
    if parsed is not None:
        return parsed
    return MailboxMessage(
        type="error", payload={"message": message.body}, timestamp=message.created_at
    )


class Mailbox:
    """Transport-agnostic mailbox used by the leader and by worker bridges."""

    def __init__(
        self,
        state_dir: Path,
        *,
        protocol: ProtocolMailbox | None = None,
        max_read_bytes: int = MAX_READ_BYTES,
    ) -> None:
        self._state_dir = Path(state_dir)
        self._protocol = protocol or ProtocolMailbox(self._state_dir)
        self._max_read_bytes = max_read_bytes

    def _paths(self, team: str) -> TeamPaths:
        return TeamPaths(self._state_dir, team)

    def uses_protocol(self, team: str) -> bool:
        return has_protocol_marker(self._paths(team))

    def _outbox_stream(self, team: str, worker: str) -> CursorStream:
        paths = self._paths(team)
        return CursorStream(
            paths.outbox(worker), paths.outbox_cursor(worker), max_read_bytes=self._max_read_bytes
        )

    def _inbox_stream(self, team: str, worker: str) -> CursorStream:
        paths = self._paths(team)
        return CursorStream(
            paths.inbox(worker), paths.inbox_cursor(worker), max_read_bytes=self._max_read_bytes
        )

    # -- worker -> leader ---------------------------------------------------------

    def append_outbox(self, team: str, worker: str, message: MailboxMessage) -> None:
        if self.uses_protocol(team):
            self._protocol.send(
                team, worker, LEAD_MAILBOX, message.type, json.dumps(message.to_json())
            )
            return
        append_jsonl(self._paths(team).outbox(worker), message.to_json())

    def _deliver(self, team: str, recipient: str, messages: list[ProtocolMessage]) -> None:
        for message in messages:
            try:
                self._protocol.mark_delivered(team, recipient, message.message_id)
            except (OSError, ValidationError) as exc:
                # The message will be returned again on the next read.
                logger.warning(
                    "Failed to mark message delivered",
                    extra={"team": team, "message_id": message.message_id, "error": str(exc)},
                )

    def read_new_outbox(self, team: str, worker: str) -> list[MailboxMessage]:
        """Return messages from ``worker`` the leader has not seen yet."""

        if self.uses_protocol(team):
            pending = [
                message
                for message in self._protocol.list_messages(team, LEAD_MAILBOX)
                if message.from_worker == worker and message.delivered_at is None
            ]
            self._deliver(team, LEAD_MAILBOX, pending)
            return [_from_protocol(message) for message in pending]
        return self._outbox_stream(team, worker).read_new()

    def read_all_team_outbox(self, team: str) -> dict[str, list[MailboxMessage]]:
        """Return new messages grouped by worker, omitting workers with none."""

        grouped: dict[str, list[MailboxMessage]] = {}
        if self.uses_protocol(team):
            pending = [
                message
                for message in self._protocol.list_messages(team, LEAD_MAILBOX)
                if message.delivered_at is None
            ]
            self._deliver(team, LEAD_MAILBOX, pending)
            for message in pending:
                grouped.setdefault(message.from_worker, []).append(_from_protocol(message))
            return grouped

        outbox_dir = self._paths(team).root / "outbox"
        if not outbox_dir.is_dir():
            return grouped
        for path in sorted(outbox_dir.glob("*.jsonl")):
            messages = self.read_new_outbox(team, path.stem)
            if messages:
                grouped[path.stem] = messages
        return grouped

    def peek_recent_outbox(
        self, team: str, worker: str, limit: int = DEFAULT_PEEK_LIMIT
    ) -> list[MailboxMessage]:
        """Return the newest messages from ``worker`` without moving any cursor."""

        if self.uses_protocol(team):
            sent = [
                message
                for message in self._protocol.list_messages(team, LEAD_MAILBOX)
                if message.from_worker == worker
            ]
            return [_from_protocol(message) for message in sent[-limit:]] if limit > 0 else []

        lines = tail_lines(self._paths(team).outbox(worker), limit)
        return [message for message in map(_parse_line, lines) if message is not None]

    def reset_outbox_cursor(self, team: str, worker: str) -> None:
        self._outbox_stream(team, worker).reset()

    def rotate_outbox(self, team: str, worker: str, max_lines: int) -> bool:
        """Keep the newest half once the outbox exceeds ``max_lines``."""

        if self.uses_protocol(team):
            return self._protocol.prune_delivered(team, LEAD_MAILBOX) > 0
        return self._outbox_stream(team, worker).rotate(max_lines=max_lines)

    # -- leader -> worker ---------------------------------------------------------

    def send_inbox(self, team: str, worker: str, message: MailboxMessage) -> None:
        if self.uses_protocol(team):
            self._protocol.send(
                team, LEAD_MAILBOX, worker, message.type, json.dumps(message.to_json())
            )
            return
        append_jsonl(self._paths(team).inbox(worker), message.to_json())

    def read_new_inbox(self, team: str, worker: str) -> list[MailboxMessage]:
        if self.uses_protocol(team):
            pending = [
                message
                for message in self._protocol.list_messages(team, worker)
                if message.delivered_at is None
            ]
            self._deliver(team, worker, pending)
            return [_from_protocol(message) for message in pending]
        return self._inbox_stream(team, worker).read_new()

    def read_all_inbox(self, team: str, worker: str) -> list[MailboxMessage]:
        """Return every message in ``worker``'s inbox, read or not, without side effects."""

        if self.uses_protocol(team):
            return [_from_protocol(message) for message in self._protocol.list_messages(team, worker)]
        lines = read_lines(self._paths(team).inbox(worker))
        return [message for message in map(_parse_line, lines) if message is not None]

    def rotate_inbox(self, team: str, worker: str, max_size_bytes: int) -> bool:
        """Keep the newest half of the inbox once it grows past ``max_size_bytes``."""

        if self.uses_protocol(team):
            return self._protocol.prune_delivered(team, worker) > 0
        return self._inbox_stream(team, worker).rotate(max_size_bytes=max_size_bytes)

    def clear_inbox(self, team: str, worker: str) -> None:
        if self.uses_protocol(team):
            inbox = self._protocol.list_messages(team, worker)
            self._deliver(team, worker, [m for m in inbox if m.delivered_at is None])
            self._protocol.prune_delivered(team, worker)
            return
        paths = self._paths(team)
        if paths.inbox(worker).exists():
            paths.inbox(worker).write_bytes(b"")
        if paths.inbox_cursor(worker).exists():
            self._inbox_stream(team, worker).reset()

    # -- signals ------------------------------------------------------------------

    def write_signal(self, team: str, worker: str, kind: SignalKind, request_id: str, reason: str) -> None:
        signal = ShutdownSignal(request_id=request_id, reason=reason)
        atomic_write_json(self._paths(team).signal(worker, kind), signal.to_json())

    def check_signal(self, team: str, worker: str, kind: SignalKind) -> ShutdownSignal | None:
        raw = read_json(self._paths(team).signal(worker, kind), default=None)
        if not isinstance(raw, dict):
            return None
        try:
            return ShutdownSignal.model_validate(raw)
        except ValidationError:
            return None

    def delete_signal(self, team: str, worker: str, kind: SignalKind) -> None:
        self._paths(team).signal(worker, kind).unlink(missing_ok=True)

    def write_shutdown_signal(self, team: str, worker: str, request_id: str, reason: str) -> None:
        self.write_signal(team, worker, "shutdown", request_id, reason)

    def check_shutdown_signal(self, team: str, worker: str) -> ShutdownSignal | None:
        return self.check_signal(team, worker, "shutdown")

    def delete_shutdown_signal(self, team: str, worker: str) -> None:
        self.delete_signal(team, worker, "shutdown")

    def write_drain_signal(self, team: str, worker: str, request_id: str, reason: str) -> None:
        self.write_signal(team, worker, "drain", request_id, reason)

    def check_drain_signal(self, team: str, worker: str) -> ShutdownSignal | None:
        return self.check_signal(team, worker, "drain")

    def delete_drain_signal(self, team: str, worker: str) -> None:
        self.delete_signal(team, worker, "drain")

    def cleanup_worker_files(self, team: str, worker: str) -> None:
        """Remove a departed worker's mailbox files and signals."""

        paths = self._paths(team)
        if self.uses_protocol(team):
            self.clear_inbox(team, worker)
        for path in (
            paths.inbox(worker),
            paths.inbox_cursor(worker),
            paths.outbox(worker),
            paths.outbox_cursor(worker),
            paths.signal(worker, "shutdown"),
            paths.signal(worker, "drain"),
        ):
            path.unlink(missing_ok=True)


__all__ = [
    "CursorStream",
    "LEAD_MAILBOX",
    "MAX_READ_BYTES",
    "Mailbox",
    "ProtocolMailbox",
]
