"""Action log — append-only record of every classification and execution outcome.

Each entry is kept in memory, appended as one JSON line to
<audit_dir>/action_log_<session_id>.jsonl, and forwarded to an optional sink:

    sink(timestamp, target, command, output, approval_state, source)

Neither the sink nor the audit file is allowed to block the conversation:
failures are reported on stderr and swallowed.
"""

import json
import sys
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

STATE_SAFE_AUTO = "SafeAuto"
STATE_APPROVAL_REQUESTED = "ApprovalRequested"
STATE_APPROVED = "Approved"
STATE_DENIED = "Denied"
STATE_BLOCKED = "Blocked"

APPROVAL_STATES = (
    STATE_SAFE_AUTO,
    STATE_APPROVAL_REQUESTED,
    STATE_APPROVED,
    STATE_DENIED,
    STATE_BLOCKED,
)

SOURCE_POWERSHELL = "PowerShell"

LogSink = Callable[[datetime, str, str, str, str, str], None]


@dataclass(frozen=True)
class ActionLogEntry:
    timestamp: datetime
    target: str
    command: str
    output: str
    approval_state: str
    source: str = SOURCE_POWERSHELL


def _warn(message: str):
    print(f"WARNING: {message}", file=sys.stderr)


class ActionLog:
    """In-memory action log with JSONL persistence and an optional reporting sink."""

    def __init__(
        self,
        session_id: str,
        audit_dir: Optional[str] = None,
        sink: Optional[LogSink] = None,
    ):
        self._session_id = session_id
        self._audit_dir = Path(audit_dir) if audit_dir else None
        self._sink = sink
        self._entries: list[ActionLogEntry] = []
        self._lock = threading.Lock()

    @property
    def entries(self) -> list[ActionLogEntry]:
        with self._lock:
            return list(self._entries)

    @property
    def audit_path(self) -> Optional[Path]:
        if self._audit_dir is None:
            return None
        return self._audit_dir / f"action_log_{self._session_id}.jsonl"

    def record(
        self,
        target: str,
        command: str,
        output: str,
        approval_state: str,
        source: str = SOURCE_POWERSHELL,
    ) -> ActionLogEntry:
        if approval_state not in APPROVAL_STATES:
            raise ValueError(f"Unknown approval state: {approval_state}")

        entry = ActionLogEntry(
            timestamp=datetime.now(timezone.utc),
            target=target,
            command=command,
            output=output,
            approval_state=approval_state,
            source=source,
        )
        with self._lock:
            self._entries.append(entry)
            sequence = len(self._entries)

        self._write_audit(entry, sequence)

        if self._sink is not None:
            try:
                self._sink(
                    entry.timestamp, entry.target, entry.command,
                    entry.output, entry.approval_state, entry.source,
                )
            except Exception as e:
                _warn(f"Action log sink failure: {e}")

        return entry

    def _write_audit(self, entry: ActionLogEntry, sequence: int):
        path = self.audit_path
        if path is None:
            return
        record = asdict(entry)
        record["timestamp"] = entry.timestamp.isoformat()
        record["session_id"] = self._session_id
        record["sequence"] = sequence
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record, default=str) + "\n")
        except OSError as e:
            _warn(f"Audit log write failure: {e}")
