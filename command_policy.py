"""Command policy — safety classification for PowerShell commands the AI requests.

Public API:
    validation = classify("Get-Service | Format-Table")
    validation.verdict   # ALLOWED | NEEDS_APPROVAL | BLOCKED
    validation.reason    # human-readable explanation ("" when ALLOWED)

Three-tier classification:
    Tier 0 (Validation) -> Tier 1 (Block-list) -> Tier 2 (Read-only allow-list)

Anything not proven read-only requires approval. Statement splitting is a
heuristic, not a PowerShell parser: command names that are built at runtime or
written without a hyphen (aliases such as `%` or `iex`) are not recognised in
multi-statement scripts.
"""

import re
from dataclasses import dataclass
from typing import Optional


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

VERDICT_ALLOWED = "ALLOWED"
VERDICT_NEEDS_APPROVAL = "NEEDS_APPROVAL"
VERDICT_BLOCKED = "BLOCKED"

REASON_EMPTY = "Command cannot be empty"
REASON_SCRIPT_MODIFIES = (
    "Script contains commands that can modify system state and requires approval"
)
REASON_UNPARSEABLE = "Could not parse command - requires approval"

# ---------------------------------------------------------------------------
# Tier 1 — Block-list (credential / secret retrieval)
# ---------------------------------------------------------------------------

_BLOCKED_COMMANDS = frozenset({
    "get-credential",
    "get-secret",
})

# ---------------------------------------------------------------------------
# Tier 2 — Read-only allow-list
# ---------------------------------------------------------------------------

# Leading command of a single statement must be a Get-* cmdlet to run unattended
_SAFE_LEADING_PREFIXES = ("get-",)

# Prefixes accepted anywhere in a pipeline or script
_SAFE_PREFIXES = (
    "get-", "select-", "where-", "sort-", "group-",
    "measure-", "test-", "convertto-", "convertfrom-", "compare-",
    "find-", "search-", "resolve-", "out-string", "out-null",
)

# Format-Volume shares the prefix but formats disks, so display formatters are enumerated
_SAFE_FORMAT_CMDLETS = frozenset({
    "format-custom",
    "format-hex",
    "format-list",
    "format-table",
    "format-wide",
})

_STATEMENT_SPLIT_RE = re.compile(r"\r\n|\n|;")

# Lines that open with these are variable, type, hashtable or block syntax
_NON_COMMAND_LEADERS = ("$", "[", "@", "{", "}", "(", ")")


@dataclass(frozen=True)
class CommandValidation:
    verdict: str
    reason: str = ""

    @property
    def is_allowed(self) -> bool:
        return self.verdict != VERDICT_BLOCKED

    @property
    def requires_approval(self) -> bool:
        return self.verdict == VERDICT_NEEDS_APPROVAL


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def is_multi_statement(command: str) -> bool:
    return "\n" in command or ";" in command


def extract_command_name(command: str) -> str:
    """Leading token of the first pipeline segment ('' if none)."""
    first_segment = command.strip().split("|")[0].strip()
    parts = first_segment.split()
    return parts[0] if parts else ""


def _is_safe_cmdlet(name: str) -> bool:
    lowered = name.lower()
    if lowered.startswith("format-"):
        return lowered in _SAFE_FORMAT_CMDLETS
    return lowered.startswith(_SAFE_PREFIXES)


def _pipeline_command_names(statement: str) -> list[str]:
    """Hyphenated command names found at the head of each pipeline segment."""
    names = []
    for part in statement.split("|"):
        part = part.strip()
        if not part or part.startswith("{") or part.startswith("}"):
            continue
        words = part.split()
        if not words:
            continue
        cmdlet = words[0]
        if "-" not in cmdlet or cmdlet.startswith("$") or cmdlet.startswith("["):
            continue
        names.append(cmdlet)
    return names


def _script_statements(command: str) -> list[str]:
    statements = []
    for raw in _STATEMENT_SPLIT_RE.split(command):
        statement = raw.strip()
        if not statement or statement.startswith("#"):
            continue
        if statement.startswith(_NON_COMMAND_LEADERS):
            continue
        # Property assignment inside an object literal: Name = Value
        if " = " in statement and "-" not in statement:
            continue
        statements.append(statement)
    return statements


def first_blocked_command(command: str) -> Optional[str]:
    """Return the first block-listed command name in a script, or None."""
    for statement in _script_statements(command):
        for name in _pipeline_command_names(statement):
            if name.lower() in _BLOCKED_COMMANDS:
                return name
    return None


def first_unsafe_command(command: str) -> Optional[str]:
    """Return the first non-allow-listed command name in a script, or None."""
    for statement in _script_statements(command):
        for name in _pipeline_command_names(statement):
            if not _is_safe_cmdlet(name):
                return name
    return None


def is_read_only_script(command: str) -> bool:
    return first_unsafe_command(command) is None


# ---------------------------------------------------------------------------
# Main classification function
# ---------------------------------------------------------------------------

def classify(command: Optional[str]) -> CommandValidation:
    """Classify a command through the three-tier policy. Never raises."""
    # Tier 0 — Validation
    if not isinstance(command, str) or not command.strip():
        return CommandValidation(VERDICT_BLOCKED, REASON_EMPTY)

    if is_multi_statement(command):
        blocked = first_blocked_command(command)
        if blocked is not None:
            return CommandValidation(
                VERDICT_BLOCKED, f"Command '{blocked}' is blocked for security reasons"
            )
        if is_read_only_script(command):
            return CommandValidation(VERDICT_ALLOWED)
        return CommandValidation(VERDICT_NEEDS_APPROVAL, REASON_SCRIPT_MODIFIES)

    cmdlet = extract_command_name(command)
    if not cmdlet:
        return CommandValidation(VERDICT_NEEDS_APPROVAL, REASON_UNPARSEABLE)

    # Tier 1 — Block-list
    blocked = cmdlet if cmdlet.lower() in _BLOCKED_COMMANDS else first_blocked_command(command)
    if blocked is not None:
        return CommandValidation(
            VERDICT_BLOCKED, f"Command '{blocked}' is blocked for security reasons"
        )

    # Tier 2 — Read-only allow-list
    if not cmdlet.lower().startswith(_SAFE_LEADING_PREFIXES):
        return CommandValidation(
            VERDICT_NEEDS_APPROVAL,
            f"Command '{cmdlet}' is not a read-only command and requires user approval",
        )

    unsafe = first_unsafe_command(command)
    if unsafe is not None:
        return CommandValidation(
            VERDICT_NEEDS_APPROVAL,
            f"Command '{unsafe}' is not a read-only command and requires user approval",
        )

    return CommandValidation(VERDICT_ALLOWED)
