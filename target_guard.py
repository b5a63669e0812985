"""Target guard — binds every PowerShell command to a verified host identity.

Public API:
    script = guard_command("Get-Service", verified_host="SRV01")
    host, body = split_host_marker(output)

The wrapped script reads $env:COMPUTERNAME at execution time and throws before
the inner command runs when the executing host is not the verified one. This is
the only defence against running on the wrong machine after a dropped or
mis-established remote session, so it is applied to safe and approved commands
alike.
"""

import ipaddress
import platform
import re
from typing import Optional


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

TARGET_MISMATCH_MARKER = "TARGET MISMATCH"
HOST_MARKER_PREFIX = "[TroubleScout host: "
OUTPUT_WIDTH = 200

_LOCAL_ALIASES = frozenset({"", "localhost", "127.0.0.1", "::1", "."})

_INNER_OPEN = "& {"
_INNER_CLOSE = f"}} | Out-String -Width {OUTPUT_WIDTH}"

_EXPECTED_RE = re.compile(r"^\$expectedComputer = '((?:[^']|'')*)'$", re.MULTILINE)
_HOST_MARKER_RE = re.compile(r"^\[TroubleScout host: ([^\]]+)\]\s*$")

_GUARD_TEMPLATE = """$ErrorActionPreference = 'Continue'
$expectedComputer = '{expected}'
$actualComputer = $env:COMPUTERNAME
if ($actualComputer -ne $expectedComputer) {{
    throw "{marker}: expected '$expectedComputer' but this command reached '$actualComputer'. Command aborted."
}}
Write-Output "{host_prefix}$actualComputer]"
{inner_open}
{command}
{inner_close}"""


class TargetNotVerifiedError(Exception):
    """Raised when a command is guarded before the target host was verified."""


# ---------------------------------------------------------------------------
# Target name helpers
# ---------------------------------------------------------------------------

def local_machine_name() -> str:
    return platform.node().split(".")[0]


def is_local_target(target: Optional[str]) -> bool:
    """True for empty, loopback, '.', or this machine's own name."""
    normalized = (target or "").strip().lower()
    if normalized in _LOCAL_ALIASES:
        return True
    machine = local_machine_name().lower()
    return bool(machine) and normalized in (machine, platform.node().lower())


def expected_host_name(target: str) -> Optional[str]:
    """Short host name a remote target should report, or None for IP addresses."""
    target = target.strip()
    try:
        ipaddress.ip_address(target)
        return None
    except ValueError:
        pass
    return target.split(".")[0]


def _quote(value: str) -> str:
    return value.replace("'", "''")


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------

def guard_command(command: str, verified_host: Optional[str]) -> str:
    """Wrap a command with a runtime host-identity check against verified_host."""
    if not verified_host or not verified_host.strip():
        raise TargetNotVerifiedError(
            "Target host has not been verified; refusing to run an unguarded command"
        )
    return _GUARD_TEMPLATE.format(
        expected=_quote(verified_host.strip()),
        marker=TARGET_MISMATCH_MARKER,
        host_prefix=HOST_MARKER_PREFIX,
        inner_open=_INNER_OPEN,
        command=command,
        inner_close=_INNER_CLOSE,
    )


def unwrap_guarded(script: str) -> Optional[tuple[str, str]]:
    """Return (expected_host, inner_command) for a guarded script, else None."""
    match = _EXPECTED_RE.search(script)
    open_idx = script.find(f"\n{_INNER_OPEN}\n")
    close_idx = script.rfind(f"\n{_INNER_CLOSE}")
    if not match or open_idx == -1 or close_idx <= open_idx:
        return None
    inner = script[open_idx + len(_INNER_OPEN) + 2 : close_idx]
    return match.group(1).replace("''", "'"), inner


def is_target_mismatch(text: Optional[str]) -> bool:
    return bool(text) and TARGET_MISMATCH_MARKER in text


def split_host_marker(output: str) -> tuple[Optional[str], str]:
    """Strip the leading host-identity marker line from command output."""
    lines = output.lstrip("\r\n").split("\n")
    if lines:
        match = _HOST_MARKER_RE.match(lines[0].strip())
        if match:
            return match.group(1), "\n".join(lines[1:])
    return None, output
