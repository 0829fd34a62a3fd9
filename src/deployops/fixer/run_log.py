"""Structured run logs and run history.

Every autofix, rollback and preview run writes its progress through a
RunLog: each line is forwarded to the caller's sink (the SSE stream or
the CLI) and kept for the run history that RunTracker saves to disk.
"""

import json
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from ..config import get_settings
from ..models import LogLevel, LogRecord, RunStatus

logger = logging.getLogger(__name__)

LogSink = Callable[[dict], None]

_LEVELS = {level.value for level in LogLevel}
_PY_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class RunLog:
    """Log stream for one run."""

    def __init__(
        self,
        kind: str,
        subject: str,
        sink: Optional[LogSink] = None,
        tracker: Optional["RunTracker"] = None,
        redact: Optional[Callable[[str], str]] = None,
    ):
        self.kind = kind
        self.subject = subject
        self.run_id = f"{datetime.now().strftime('%Y%m%d-%H%M%S')}-{kind}-{uuid.uuid4().hex[:6]}"
        self.started_at = datetime.now().isoformat()
        self.ended_at: Optional[str] = None
        self.records: list[dict] = []
        self.terminal: Optional[dict] = None
        self._sink = sink
        self._tracker = tracker
        self._redact = redact or (lambda text: text)

    def redact_with(self, redact: Callable[[str], str]) -> None:
        """Redact secrets from every later line (used once credentials are known)."""
        self._redact = redact

    def redact(self, text: str) -> str:
        return self._redact(text)

    def log(self, message: str, level: str = "info") -> None:
        """Append a line and forward it to the sink."""
        level = getattr(level, "value", level)
        if level not in _LEVELS:
            level = LogLevel.INFO.value
        record = LogRecord(message=self._redact(str(message)), level=level)
        data = record.model_dump(mode="json")
        self.records.append(data)
        logger.log(_PY_LEVELS[level], f"[{self.kind} {self.subject}] {record.message}")
        self._emit(data)

    def info(self, message: str) -> None:
        self.log(message, "info")

    def success(self, message: str) -> None:
        self.log(message, "success")

    def warning(self, message: str) -> None:
        self.log(message, "warning")

    def error(self, message: str) -> None:
        self.log(message, "error")

    def finish(self, status: RunStatus, message: str, **result) -> dict:
        """Emit the terminal record and persist the run history."""
        status = getattr(status, "value", status)
        self.ended_at = datetime.now().isoformat()
        self.terminal = {"status": status, "message": self._redact(message), **result}
        self._emit(self.terminal)
        if self._tracker is not None:
            try:
                self._tracker.save(self)
            except OSError as e:
                logger.warning(f"Could not save run {self.run_id}: {e}")
        return self.terminal

    def _emit(self, payload: dict) -> None:
        if self._sink is None:
            return
        try:
            self._sink(payload)
        except Exception as e:
            # A gone client must not fail the run
            logger.warning(f"Log sink failed for run {self.run_id}: {e}")


class RunTracker:
    """Stores finished runs as JSON files."""

    def __init__(self, storage_dir: Optional[str] = None):
        """Initialize the tracker.

        Args:
            storage_dir: Directory to store run logs. Defaults to the configured run_log_dir.
        """
        self.storage_dir = Path(storage_dir or get_settings().run_log_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

    def save(self, run: RunLog) -> str:
        """Write a finished run to disk.

        Returns:
            Path to the saved run file
        """
        run_file = self.storage_dir / f"{run.run_id}.json"
        terminal = run.terminal or {}
        run_data = {
            "run_id": run.run_id,
            "kind": run.kind,
            "subject": run.subject,
            "started_at": run.started_at,
            "ended_at": run.ended_at,
            "status": terminal.get("status"),
            "record_count": len(run.records),
            "records": run.records,
            "result": terminal,
        }

        with open(run_file, "w") as f:
            json.dump(run_data, f, indent=2, default=str)

        logger.info(f"Saved run {run.run_id} with {len(run.records)} log lines to {run_file}")
        return str(run_file)

    def get_run(self, run_id: str) -> Optional[dict]:
        """Load a run from disk.

        Args:
            run_id: The run ID to load

        Returns:
            Run data dict or None if not found
        """
        run_file = self.storage_dir / f"{Path(run_id).name}.json"
        if not run_file.exists():
            return None

        with open(run_file) as f:
            return json.load(f)

    def list_runs(self, limit: int = 10, kind: Optional[str] = None) -> list[dict]:
        """List recent runs, newest first.

        Returns:
            List of run summaries (run_id, kind, subject, status, started_at, ended_at)
        """
        runs = []
        for run_file in sorted(self.storage_dir.glob("*.json"), reverse=True):
            with open(run_file) as f:
                data = json.load(f)
            if kind and data.get("kind") != kind:
                continue
            runs.append({
                "run_id": data["run_id"],
                "kind": data.get("kind"),
                "subject": data.get("subject"),
                "status": data.get("status"),
                "started_at": data.get("started_at"),
                "ended_at": data.get("ended_at"),
            })
            if len(runs) >= limit:
                break
        return runs

