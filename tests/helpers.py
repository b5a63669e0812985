"""Shared helper functions and fakes for TroubleScout tests.

Import these in test files: from helpers import FakeExecutor, FakeDriver, ...
Fixtures are in conftest.py and are auto-injected by pytest.
"""

import asyncio
import json
from dataclasses import dataclass, field
from pathlib import Path
from unittest.mock import MagicMock

from ps_executor import PowerShellResult
from session_events import (
    EventHub,
    SessionError,
    ToolCompleted,
    ToolStarted,
    TurnIdle,
    TurnStart,
)
from target_guard import HOST_MARKER_PREFIX, TARGET_MISMATCH_MARKER, unwrap_guarded


# ---------------------------------------------------------------------------
# Fake PowerShell backend
# ---------------------------------------------------------------------------

class FakeExecutor:
    """PowerShellExecutor double that honours the target guard.

    A guarded script only runs its inner command when the expected host equals
    `executing_host`; otherwise it fails with TARGET MISMATCH and nothing runs.
    Unguarded scripts are recorded in `unguarded` and refused.
    """

    def __init__(self, target_server="SRV01", host="SRV01", executing_host=None,
                 responder=None, connect_error=None):
        self.target_server = target_server
        self.host = host
        self.executing_host = executing_host or host
        self.responder = responder or (lambda command: PowerShellResult(True, f"output of {command}"))
        self.connect_error = connect_error
        self.actual_computer_name = None
        self.executed = []
        self.unguarded = []
        self.scripts = []

    def connect(self):
        if self.connect_error:
            return False, self.connect_error
        self.actual_computer_name = self.host
        return True, None

    def invalidate_verification(self):
        self.actual_computer_name = None

    def get_connection_mode(self):
        if self.actual_computer_name:
            return f"WinRM to {self.actual_computer_name}"
        return f"WinRM to {self.target_server} (not verified)"

    def get_command_history(self):
        return list(self.executed)

    def execute(self, script):
        self.scripts.append(script)
        unwrapped = unwrap_guarded(script)
        if unwrapped is None:
            self.unguarded.append(script)
            return PowerShellResult(False, "", "unguarded script refused by test backend")

        expected, inner = unwrapped
        if expected.lower() != self.executing_host.lower():
            return PowerShellResult(
                False, "",
                f"{TARGET_MISMATCH_MARKER}: expected '{expected}' but this command reached "
                f"'{self.executing_host}'. Command aborted.",
            )

        self.executed.append(inner)
        result = self.responder(inner)
        if result.success:
            result = PowerShellResult(
                True, f"{HOST_MARKER_PREFIX}{self.executing_host}]\n{result.output}", result.error,
            )
        return result


# ---------------------------------------------------------------------------
# Fake conversation driver
# ---------------------------------------------------------------------------

@dataclass
class ToolCall:
    name: str
    args: dict = field(default_factory=dict)


class FakeDriver:
    """Driver double that replays one scripted exchange per send().

    Each script is a list of session events and ToolCall entries. ToolCall
    entries go through the bound tool handler with ToolStarted/ToolCompleted
    around them. A TurnIdle is appended unless the script already ends the turn.
    """

    def __init__(self, scripts=None, model="fake-model", fail_send=None):
        self._hub = EventHub()
        self.scripts = list(scripts or [])
        self.model = model
        self.fail_send = fail_send
        self.tool_handler = None
        self.prompts = []
        self.tool_results = []
        self.resets = []
        self.handler_counts = []
        self._tasks = []

    def subscribe(self, handler):
        return self._hub.subscribe(handler)

    @property
    def handler_count(self):
        return self._hub.handler_count

    def reset(self, system_instruction=None):
        self.resets.append(system_instruction)

    async def send(self, prompt):
        if self.fail_send:
            raise self.fail_send
        self.prompts.append(prompt)
        self.handler_counts.append(self._hub.handler_count)
        script = self.scripts.pop(0) if self.scripts else []
        self._tasks.append(asyncio.create_task(self._replay(script)))
        return f"msg-{len(self.prompts)}"

    async def _replay(self, script):
        await asyncio.sleep(0)
        self._hub.publish(TurnStart())
        for item in script:
            if isinstance(item, ToolCall):
                self._hub.publish(ToolStarted(item.name))
                result = await self.tool_handler(item.name, item.args)
                self.tool_results.append((item.name, result))
                self._hub.publish(ToolCompleted(item.name))
            else:
                self._hub.publish(item)
        if not script or not isinstance(script[-1], (TurnIdle, SessionError)):
            self._hub.publish(TurnIdle())


# ---------------------------------------------------------------------------
# Console double
# ---------------------------------------------------------------------------

class RecordingUI:
    """ConsoleUI double: records output and answers prompts from callables/lists."""

    def __init__(self, approve=None, select=None, inputs=None, confirm=True):
        self.approve = approve or ApprovalTracker(False)
        self.select = select or BatchTracker([])
        self.inputs = list(inputs or [])
        self.confirm_answer = confirm
        self.messages = []
        self.streamed = []
        self.actions = []
        self.responses_started = 0

    def _record(self, kind, text=""):
        self.messages.append((kind, text))

    def texts(self, kind):
        return [text for k, text in self.messages if k == kind]

    def show_banner(self):
        self._record("banner")

    def show_help(self):
        self._record("help")

    def show_status_panel(self, fields):
        self._record("status", dict(fields))

    def show_command_history(self, history):
        self._record("history", list(history))

    def show_info(self, message):
        self._record("info", message)

    def show_success(self, message):
        self._record("success", message)

    def show_warning(self, message):
        self._record("warning", message)

    def show_error(self, title, message):
        self._record("error", f"{title}: {message}")

    def show_action(self, approval_state, command):
        self.actions.append((approval_state, command))

    def show_thinking(self, status):
        self._record("thinking", status)

    def show_tool_execution(self, tool_name):
        self._record("tool", tool_name)

    def start_ai_response(self):
        self.responses_started += 1

    def write_ai_response(self, text):
        self.streamed.append(text)

    def end_ai_response(self):
        pass

    def get_user_input(self):
        if not self.inputs:
            raise EOFError
        return self.inputs.pop(0)

    def prompt_command_approval(self, command, reason):
        return self.approve(command, reason)

    def prompt_batch_approval(self, entries):
        return self.select(entries)

    def confirm(self, question, default=False):
        return self.confirm_answer


# ---------------------------------------------------------------------------
# Approval callback helpers
# ---------------------------------------------------------------------------

class ApprovalTracker:
    """Single-command approval callback that records calls."""

    def __init__(self, answer=True):
        self.answer = answer
        self.calls = []

    def __call__(self, command, reason):
        self.calls.append((command, reason))
        return self.answer


class BatchTracker:
    """Batch approval callback returning a fixed selection of zero-based indices."""

    def __init__(self, selection):
        self.selection = list(selection)
        self.calls = []

    def __call__(self, entries):
        self.calls.append(list(entries))
        return list(self.selection)


def approval_error(command, reason):
    raise RuntimeError("approval mechanism failure")


class SinkRecorder:
    def __init__(self):
        self.calls = []

    def __call__(self, timestamp, target, command, output, approval_state, source):
        self.calls.append((timestamp, target, command, output, approval_state, source))


# ---------------------------------------------------------------------------
# Subprocess mock helper
# ---------------------------------------------------------------------------

def mock_subprocess_result(stdout=b"", stderr=b"", returncode=0):
    """Create a mock subprocess.CompletedProcess with byte streams."""
    result = MagicMock()
    result.stdout = stdout.encode("utf-8") if isinstance(stdout, str) else stdout
    result.stderr = stderr.encode("utf-8") if isinstance(stderr, str) else stderr
    result.returncode = returncode
    return result


# ---------------------------------------------------------------------------
# Audit log reader helper
# ---------------------------------------------------------------------------

def read_audit_records(audit_dir, session_id="test_session"):
    """Read all action log records from a session's JSONL file."""
    filepath = Path(audit_dir) / f"action_log_{session_id}.jsonl"
    if not filepath.exists():
        return []
    return [json.loads(line) for line in filepath.read_text(encoding="utf-8").splitlines() if line]


def states(action_log):
    return [(e.command, e.approval_state) for e in action_log.entries]
