"""Filesystem layout and JSON helpers for the state directory."""

from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from ..names import sanitize_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TeamPaths:
    """Paths of every file a team owns under the state directory."""

    state_dir: Path
    team: str

    @property
    def root(self) -> Path:
        return Path(self.state_dir) / "teams" / sanitize_name(self.team)

    @property
    def registry(self) -> Path:
        return self.root / "workers.json"

    @property
    def state_version(self) -> Path:
        return self.root / "state_version"

    @property
    def audit(self) -> Path:
        return self.root / "audit.jsonl"

    @property
    def tasks(self) -> Path:
        return self.root / "tasks"

    def heartbeat(self, worker: str) -> Path:
        return self.root / "heartbeats" / f"{sanitize_name(worker)}.json"

    def outbox(self, worker: str) -> Path:
        return self.root / "outbox" / f"{sanitize_name(worker)}.jsonl"

    def outbox_cursor(self, worker: str) -> Path:
        return self.root / "outbox" / f"{sanitize_name(worker)}.outbox-offset"

    def inbox(self, worker: str) -> Path:
        return self.root / "inbox" / f"{sanitize_name(worker)}.jsonl"

    def inbox_cursor(self, worker: str) -> Path:
        return self.root / "inbox" / f"{sanitize_name(worker)}.offset"

    def mailbox(self, recipient: str) -> Path:
        return self.root / "mailbox" / sanitize_name(recipient)

    def signal(self, worker: str, kind: str) -> Path:
        return self.root / "signals" / f"{sanitize_name(worker)}.{kind}"


def read_json(path: Path, default: Any = None) -> Any:
    """Return the parsed JSON at ``path`` or ``default`` if missing or malformed."""

    try:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except FileNotFoundError:
        return default
    except (OSError, json.JSONDecodeError, UnicodeDecodeError) as exc:
        logger.debug("Ignoring unreadable JSON file", extra={"path": str(path), "error": str(exc)})
        return default


def atomic_write_json(path: Path, payload: Any) -> None:
    """Replace ``path`` with ``payload`` so readers never see a partial file."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp-{uuid.uuid4().hex[:8]}")
    try:
        with tmp.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def append_jsonl(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n"
    with path.open("a", encoding="utf-8") as handle:
        handle.write(line)
        handle.flush()


def iter_jsonl(path: Path) -> Iterator[dict[str, Any]]:
    """Yield JSON objects from ``path``, skipping blank and malformed lines."""

    try:
        handle = path.open("r", encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return
    with handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(record, dict):
                yield record


def read_lines(path: Path) -> list[str]:
    """Return the non-empty lines of a text file, or nothing if unreadable."""

    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return []
    return [line for line in text.splitlines() if line.strip()]


def tail_lines(path: Path, limit: int) -> list[str]:
    lines = read_lines(path)
    return lines[-limit:] if limit > 0 else []


__all__ = [
    "TeamPaths",
    "append_jsonl",
    "atomic_write_json",
    "iter_jsonl",
    "read_json",
    "read_lines",
    "tail_lines",
]
