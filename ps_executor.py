"""PowerShell executor — runs scripts locally or on a remote host via WinRM.

Public API:
    executor = PowerShellExecutor("srv01.contoso.local")
    ok, error = executor.connect()          # verifies the host identity once
    result = executor.execute(script)       # PowerShellResult(success, output, error)

Execution is serialized: at most one script runs against the target at a time.
Shell-level failures (non-zero exit, stderr, timeout, missing executable) are
returned as PowerShellResult errors, never raised.
"""

import base64
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Optional

from target_guard import expected_host_name, is_local_target, unwrap_guarded


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MODE_LOCAL = "local"
MODE_REMOTE = "remote"

DEFAULT_TIMEOUT_SECONDS = 240   # WinRM operation timeout (4 minutes)
OPEN_TIMEOUT_SECONDS = 60       # bootstrap / identity query
HOST_IDENTITY_QUERY = "$env:COMPUTERNAME"
OUTPUT_ENCODINGS = ("utf-8-sig", "cp1252")

_REMOTE_TEMPLATE = """$__encoded = '{encoded}'
$__script = [System.Text.Encoding]::Unicode.GetString([System.Convert]::FromBase64String($__encoded))
Invoke-Command -ComputerName '{target}' -ScriptBlock ([scriptblock]::Create($__script)) -ErrorAction Stop"""


@dataclass
class PowerShellResult:
    success: bool
    output: str
    error: Optional[str] = None
    timed_out: bool = False
    duration_seconds: Optional[float] = None


def _default_executable() -> str:
    if shutil.which("pwsh"):
        return "pwsh"
    return "powershell.exe"


def encode_script(script: str) -> str:
    """Base64 of the UTF-16LE script text, as PowerShell expects."""
    return base64.b64encode(script.encode("utf-16-le")).decode("ascii")


def decode_output(data: Optional[bytes]) -> str:
    """Decode console output: UTF-8 first, then the Windows ANSI code page."""
    if not data:
        return ""
    for encoding in OUTPUT_ENCODINGS:
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            continue
    return data.decode("latin-1")


def build_remote_script(target: str, script: str) -> str:
    return _REMOTE_TEMPLATE.format(
        encoded=encode_script(script),
        target=target.replace("'", "''"),
    )


# ---------------------------------------------------------------------------
# PowerShellExecutor
# ---------------------------------------------------------------------------

class PowerShellExecutor:
    """Execution adapter for one target server (local or remote)."""

    def __init__(
        self,
        target_server: str = "localhost",
        executable: Optional[str] = None,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
        open_timeout_seconds: int = OPEN_TIMEOUT_SECONDS,
    ):
        self._target = (target_server or "").strip() or "localhost"
        self._use_local = is_local_target(self._target)
        self._executable = executable or _default_executable()
        self._timeout = timeout_seconds
        self._open_timeout = open_timeout_seconds
        self._lock = threading.Lock()
        self._history: list[str] = []
        self._actual_computer_name: Optional[str] = None

    @property
    def target_server(self) -> str:
        return self._target

    @property
    def mode(self) -> str:
        return MODE_LOCAL if self._use_local else MODE_REMOTE

    @property
    def actual_computer_name(self) -> Optional[str]:
        """Host name captured by connect(); None until verified."""
        return self._actual_computer_name

    # --- Connection ---

    def query_host_identity(self) -> PowerShellResult:
        with self._lock:
            return self._run(HOST_IDENTITY_QUERY, self._open_timeout)

    def connect(self) -> tuple[bool, Optional[str]]:
        """Query the executing host and verify it is the requested target."""
        result = self.query_host_identity()
        if not result.success:
            return False, result.error or "Failed to execute test command"

        actual = result.output.strip()
        if not actual:
            return False, f"Target {self._target} did not report a computer name"

        if not self._use_local:
            expected = expected_host_name(self._target)
            if expected and actual.lower() != expected.lower():
                return False, (
                    f"Target mismatch! Expected to connect to '{expected}' but connected to "
                    f"'{actual}'. This may indicate a WinRM configuration issue or the remote "
                    "session is not being established correctly."
                )

        self._actual_computer_name = actual
        return True, None

    def invalidate_verification(self):
        """Forget the verified host; commands are refused until connect() succeeds again."""
        self._actual_computer_name = None

    def get_connection_mode(self) -> str:
        if self._use_local:
            return f"Local PowerShell ({self._actual_computer_name or self._target})"
        if self._actual_computer_name:
            return f"WinRM to {self._actual_computer_name}"
        return f"WinRM to {self._target} (not verified)"

    # --- Execution ---

    def execute(self, script: str) -> PowerShellResult:
        """Run a script against the target. Calls are serialized."""
        with self._lock:
            unwrapped = unwrap_guarded(script)
            self._history.append(unwrapped[1] if unwrapped else script)
            return self._run(script, self._timeout)

    def get_command_history(self) -> list[str]:
        return list(self._history)

    def _build_args(self, script: str) -> list[str]:
        body = script if self._use_local else build_remote_script(self._target, script)
        return [self._executable, "-NoProfile", "-NonInteractive", "-EncodedCommand", encode_script(body)]

    def _run(self, script: str, timeout: int) -> PowerShellResult:
        args = self._build_args(script)
        start_time = time.monotonic()
        try:
            proc = subprocess.run(
                args,
                capture_output=True,
                timeout=timeout,
                shell=False,
            )
        except subprocess.TimeoutExpired:
            return PowerShellResult(
                success=False,
                output="",
                error=f"Command timed out after {timeout} seconds on {self._target}",
                timed_out=True,
                duration_seconds=round(time.monotonic() - start_time, 3),
            )
        except FileNotFoundError:
            return PowerShellResult(
                success=False,
                output="",
                error=f"PowerShell executable not found: {self._executable}",
                duration_seconds=round(time.monotonic() - start_time, 3),
            )
        except (OSError, ValueError) as e:
            # ValueError: argv rejected by subprocess (e.g. embedded NUL)
            return PowerShellResult(
                success=False,
                output="",
                error=str(e),
                duration_seconds=round(time.monotonic() - start_time, 3),
            )

        duration = round(time.monotonic() - start_time, 3)
        stdout = decode_output(proc.stdout)
        stderr = decode_output(proc.stderr).strip()

        if proc.returncode != 0 or stderr:
            return PowerShellResult(
                success=False,
                output=stdout,
                error=stderr or f"PowerShell exited with code {proc.returncode}",
                duration_seconds=duration,
            )
        return PowerShellResult(success=True, output=stdout, duration_seconds=duration)
