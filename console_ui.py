"""Console collaborator — operator prompts, status lines and streamed AI output.

Everything here is plain print()/input() on the terminal. The session
orchestrator only talks to the ConsoleUI methods, so tests can substitute a
recording double.
"""

import sys
import textwrap
from typing import Optional

from action_log import (
    STATE_APPROVAL_REQUESTED,
    STATE_APPROVED,
    STATE_BLOCKED,
    STATE_DENIED,
    STATE_SAFE_AUTO,
)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BOX_WIDTH = 71
PROMPT = "TroubleScout> "

BANNER = r"""
  _____               _     _      ____                  _
 |_   _| __ ___  _   _| |__ | | ___/ ___|  ___ ___  _   _| |_
   | || '__/ _ \| | | | '_ \| |/ _ \___ \ / __/ _ \| | | | __|
   | || | | (_) | |_| | |_) | |  __/___) | (_| (_) | |_| | |_
   |_||_|  \___/ \__,_|_.__/|_|\___|____/ \___\___/ \__,_|\__|
        AI-assisted Windows Server troubleshooting
"""

HELP_TEXT = """Commands:
  /help                 Show this help
  /status               Show connection, model and execution mode
  /history              Show PowerShell commands run this session
  /mode <safe|yolo>     Switch execution mode
  /connect <server>     Connect to a different server
  /clear                Clear the screen and start a new conversation
  /exit, /quit          End the session

Anything else is sent to the AI as a troubleshooting question.
Only read-only Get-* commands run automatically; other commands need approval
in safe mode. Credential retrieval commands are always blocked."""

_ACTION_LABELS = {
    STATE_SAFE_AUTO: "SAFE — auto-approved",
    STATE_APPROVAL_REQUESTED: "QUEUED for approval",
    STATE_APPROVED: "APPROVED",
    STATE_DENIED: "DENIED",
    STATE_BLOCKED: "BLOCKED",
}


def _clip(text: str, limit: int) -> str:
    text = " ".join(text.split())
    return text[:limit] + ("…" if len(text) > limit else "")


def _print_command(command: str, indent: str, width: int = BOX_WIDTH):
    """Print every line of a command, wrapping long lines without dropping text."""
    for line in command.splitlines() or [""]:
        wrapped = textwrap.wrap(line, width=width - len(indent), break_long_words=True,
                                break_on_hyphens=False, drop_whitespace=False,
                                subsequent_indent="  ") or [""]
        for part in wrapped:
            print(f"{indent}{part}")


def parse_selection(answer: str, count: int) -> list[int]:
    """Parse '1,3', '2-4', 'a'/'all' into sorted zero-based indices. Invalid parts are ignored."""
    answer = answer.strip().lower()
    if answer in ("a", "all"):
        return list(range(count))

    selected = set()
    for token in answer.replace(" ", ",").split(","):
        token = token.strip()
        if not token:
            continue
        if "-" in token:
            low, _, high = token.partition("-")
            if low.isdigit() and high.isdigit():
                selected.update(range(int(low), int(high) + 1))
            continue
        if token.isdigit():
            selected.add(int(token))
    return sorted(i - 1 for i in selected if 1 <= i <= count)


# ---------------------------------------------------------------------------
# ConsoleUI
# ---------------------------------------------------------------------------

class ConsoleUI:
    def __init__(self):
        self._streaming = False

    # --- Panels ---

    def show_banner(self):
        print(BANNER)

    def show_help(self):
        print(HELP_TEXT)

    def show_status_panel(self, fields: list[tuple[str, str]]):
        width = max((len(label) for label, _ in fields), default=0)
        print()
        for label, value in fields:
            print(f"  {label:<{width}} : {value}")
        print()

    def show_command_history(self, history: list[str]):
        if not history:
            print("No commands have been executed in this session.")
            return
        print(f"\nCommand history ({len(history)}):")
        for i, command in enumerate(history, 1):
            print(f"  {i:>3}. {_clip(command, 100)}")

    # --- Status lines ---

    def show_info(self, message: str):
        print(f"[TroubleScout] {message}")

    def show_success(self, message: str):
        print(f"[TroubleScout] OK: {message}")

    def show_warning(self, message: str):
        print(f"[TroubleScout] WARNING: {message}")

    def show_error(self, title: str, message: str):
        print(f"[ERROR] {title}: {message}", file=sys.stderr)

    def show_action(self, approval_state: str, command: str):
        label = _ACTION_LABELS.get(approval_state, approval_state)
        print(f"[Shell] {label}: {_clip(command, 60)}")

    def show_thinking(self, status: str):
        print(f"[TroubleScout] {status}...")

    def show_tool_execution(self, tool_name: str):
        print(f"[TroubleScout] Running tool: {tool_name}")

    # --- Streamed AI output ---

    def start_ai_response(self):
        self._streaming = True
        print("\nTroubleScout:", flush=True)

    def write_ai_response(self, text: str):
        print(text, end="", flush=True)

    def end_ai_response(self):
        if self._streaming:
            print("\n", flush=True)
        self._streaming = False

    # --- Operator decisions ---

    def get_user_input(self) -> str:
        return input(PROMPT)

    def prompt_command_approval(self, command: str, reason: str) -> bool:
        """Show a safety alert box for one command and wait for the operator decision.

        The reason is clipped to fit the box; the command is printed in full below it.
        """
        W = BOX_WIDTH

        def _row(label: str, value: str):
            content = f"{label}{value}"[: W - 4]
            print(f"│  {content:<{W - 4}}│")

        print("\n┌" + "─" * (W - 2) + "┐")
        _row("", "APPROVAL REQUIRED")
        _row("REASON:     ", _clip(reason, 55))
        print("└" + "─" * (W - 2) + "┘")
        print("COMMAND:")
        _print_command(command, "    ")
        print("[A]pprove   [D]eny")

        choice = input("Your choice: ").strip().lower()
        return choice in ("a", "y", "yes", "approve")

    def prompt_batch_approval(self, entries: list[tuple[str, str]]) -> list[int]:
        """List queued commands in full and return the zero-based indices the operator approves."""
        print(f"\n{len(entries)} commands require approval:")
        for i, (command, reason) in enumerate(entries, 1):
            print(f"  [{i}] reason: {_clip(reason, 70)}")
            _print_command(command, "      ")
        answer = input("Approve which? (e.g. 1,3 or 2-4; 'a' = all; Enter = none): ")
        return parse_selection(answer, len(entries))

    def confirm(self, question: str, default: Optional[bool] = False) -> bool:
        suffix = " [Y/n] " if default else " [y/N] "
        answer = input(question + suffix).strip().lower()
        if not answer:
            return bool(default)
        return answer in ("y", "yes")
