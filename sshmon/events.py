"""Durable event logging for sshmon.

Session events (connection, authentication, command, malware-download,
disconnect) are written in three forms:

- one JSON object per line in ``<logs_dir>/events.jsonl``, rotated daily
- one spreadsheet row per connection, authentication, command and download
  in ``<logs_dir>/credentials.csv``, rotated daily
- a human readable transcript per session in ``<logs_dir>/sessions/<id>.log``

Writing happens on a shared background thread pool; sessions submit events
and never wait for the disk on their input path.
"""

from __future__ import annotations

import csv
import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional, Set

LOGGER = logging.getLogger(__name__)

EVENT_CONNECTION = "connection"
EVENT_AUTHENTICATION = "authentication"
EVENT_COMMAND = "command"
EVENT_DOWNLOAD = "malware-download"
EVENT_DISCONNECT = "disconnect"

EVENT_KINDS = (
    EVENT_CONNECTION,
    EVENT_AUTHENTICATION,
    EVENT_COMMAND,
    EVENT_DOWNLOAD,
    EVENT_DISCONNECT,
)

MAX_JSON_OUTPUT = 500

CSV_HEADER = (
    "Date", "Time", "IP", "Port", "Event", "Username", "Password",
    "Country", "City", "AbuseScore", "Details",
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EventLogger:
    """Writes session events to the JSONL log and per-session transcripts."""

    def __init__(self, logs_dir: Path, backup_count: int = 30):
        self.logs_dir = Path(logs_dir)
        self.sessions_dir = self.logs_dir / "sessions"
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        self.jsonl_path = self.logs_dir / "events.jsonl"
        self.csv_path = self.logs_dir / "credentials.csv"
        self.backup_count = backup_count

        self._handler = TimedRotatingFileHandler(
            self.jsonl_path,
            when="midnight",
            backupCount=backup_count,
            encoding="utf-8",
        )
        self._handler.setFormatter(logging.Formatter("%(message)s"))
        self._transcript_lock = threading.Lock()
        self._started: Set[str] = set()
        self._csv_lock = threading.Lock()
        self._csv_day: Optional[str] = None

    def emit(self, event: str, **fields: Any) -> None:
        """Record one event. Failures are logged and never raised."""
        if event not in EVENT_KINDS:
            LOGGER.warning("Ignoring unknown event kind %r", event)
            return
        try:
            self._write_json(event, fields)
        except Exception as exc:
            LOGGER.error("Failed to write %s event to %s: %s", event, self.jsonl_path, exc)
        if event != EVENT_DISCONNECT:
            try:
                self._write_csv(event, fields)
            except Exception as exc:
                LOGGER.error("Failed to write %s row to %s: %s", event, self.csv_path, exc)
        session_id = fields.get("session_id")
        if session_id:
            try:
                self._write_transcript(event, session_id, fields)
            except Exception as exc:
                LOGGER.error("Failed to write transcript for session %s: %s", session_id, exc)

    def _write_json(self, event: str, fields: Dict[str, Any]) -> None:
        record: Dict[str, Any] = {"timestamp": _utc_now().isoformat(), "event": event}
        record.update(fields)
        output = record.get("output")
        if isinstance(output, str) and len(output) > MAX_JSON_OUTPUT:
            record["output"] = output[:MAX_JSON_OUTPUT]
        line = json.dumps(record, default=str)
        self._handler.handle(logging.makeLogRecord({"msg": line, "args": None}))

    def _write_csv(self, event: str, fields: Dict[str, Any]) -> None:
        now = _utc_now()
        day = now.strftime("%Y-%m-%d")
        intel = fields.get("intel") or {}
        password = "-"
        details = "-"
        if event == EVENT_AUTHENTICATION:
            method = fields.get("method", "password")
            if method == "password":
                password = fields.get("password") or "-"
            verdict = "accepted" if fields.get("accepted", True) else "rejected"
            details = f"{method} {verdict}"
        elif event == EVENT_COMMAND:
            details = fields.get("input") or "-"
        elif event == EVENT_DOWNLOAD:
            details = fields.get("url") or "-"
        elif event == EVENT_CONNECTION:
            details = "connection opened"
        row = [
            day,
            now.strftime("%H:%M:%S"),
            fields.get("peer_ip") or "-",
            fields.get("peer_port") or "-",
            event,
            fields.get("username") or "-",
            password,
            intel.get("country") or "-",
            intel.get("city") or "-",
            intel.get("abuse_score", "-"),
            details,
        ]
        with self._csv_lock:
            self._rotate_csv(day)
            new_file = not self.csv_path.exists()
            with self.csv_path.open("a", encoding="utf-8", newline="") as fh:
                writer = csv.writer(fh)
                if new_file:
                    writer.writerow(CSV_HEADER)
                writer.writerow(row)

    def _rotate_csv(self, day: str) -> None:
        """Move yesterday's rows aside the first time a new day is written."""
        if self._csv_day is None and self.csv_path.exists():
            self._csv_day = datetime.fromtimestamp(
                self.csv_path.stat().st_mtime, timezone.utc
            ).strftime("%Y-%m-%d")
        if self._csv_day is not None and self._csv_day != day and self.csv_path.exists():
            self.csv_path.replace(self.csv_path.with_name(f"{self.csv_path.name}.{self._csv_day}"))
            backups = sorted(self.logs_dir.glob(f"{self.csv_path.name}.*"))
            for old in backups[: max(0, len(backups) - self.backup_count)]:
                old.unlink()
        self._csv_day = day

    def transcript_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.log"

    def _write_transcript(self, event: str, session_id: str, fields: Dict[str, Any]) -> None:
        now = _utc_now()
        stamp = now.strftime("%H:%M:%S")
        lines = []
        with self._transcript_lock:
            path = self.transcript_path(session_id)
            if session_id not in self._started and not path.exists():
                lines += [
                    f"=== Session {session_id} ===",
                    f"Start: {now.isoformat()}",
                    f"IP: {fields.get('peer_ip', '-')}:{fields.get('peer_port', '-')}",
                    "---",
                ]
            self._started.add(session_id)

            if event == EVENT_AUTHENTICATION:
                verdict = "ACCEPTED" if fields.get("accepted", True) else "REJECTED"
                method = fields.get("method", "password")
                secret = fields.get("password") if method == "password" else f"({method})"
                lines.append(f"[{stamp}] AUTH: {fields.get('username', '')} / {secret} [{verdict}]")
            elif event == EVENT_COMMAND:
                lines.append(f"[{stamp}] CMD: {fields.get('input', '')}")
                output = fields.get("output") or ""
                if output:
                    for out_line in output.rstrip("\n").split("\n"):
                        lines.append(f"           OUT: {out_line}")
            elif event == EVENT_DOWNLOAD:
                lines.append(f"[{stamp}] DOWNLOAD: {fields.get('url', '')} ({fields.get('tool', '-')})")
            elif event == EVENT_DISCONNECT:
                lines.append(
                    f"[{stamp}] DISCONNECT (reason: {fields.get('reason', '-')}, "
                    f"duration: {fields.get('duration', 0)}s, commands: {fields.get('command_count', 0)})"
                )
                self._started.discard(session_id)
            elif event == EVENT_CONNECTION:
                intel = fields.get("intel") or {}
                if intel:
                    lines.append(f"[{stamp}] CONNECTION: {json.dumps(intel, default=str)}")

            if lines:
                with path.open("a", encoding="utf-8") as fh:
                    fh.write("\n".join(lines) + "\n")

    def close(self) -> None:
        self._handler.close()


# Shared pool for fire-and-forget logging and enrichment calls
_executor: Optional[ThreadPoolExecutor] = None
_executor_lock = threading.Lock()


def get_background_executor() -> ThreadPoolExecutor:
    """Get or create the shared background thread pool."""
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="sshmon-bg")
        return _executor


def shutdown_background_executor(wait: bool = True) -> None:
    global _executor
    with _executor_lock:
        if _executor is not None:
            _executor.shutdown(wait=wait)
            _executor = None


_event_logger: Optional[EventLogger] = None
_event_logger_lock = threading.Lock()


def get_event_logger() -> EventLogger:
    """Get or create the global event logger."""
    global _event_logger
    with _event_logger_lock:
        if _event_logger is None:
            from .config import get_config

            _event_logger = EventLogger(get_config().logging.logs_dir)
        return _event_logger
