"""Pending approval queue and the end-of-turn approval workflow.

Commands classified NEEDS_APPROVAL are collected in a PendingQueue while the
AI driver is streaming. When the turn completes, ApprovalWorkflow.resolve()
asks the operator for a decision on every entry, executes the approved ones in
their original order, and clears the queue. It returns the prompt for a
continuation turn, or None when nothing was executed.

Callback contracts:
    approve(command, reason) -> bool
    approve_batch([(command, reason), ...]) -> [selected zero-based indices]
"""

import sys
from dataclasses import dataclass
from typing import Callable, Optional


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DENIAL_MESSAGE = "User denied approval; command was not executed."
TURN_FAILED_MESSAGE = "Turn ended with an error; command was not executed."

SINGLE_CONTINUATION_TEMPLATE = (
    "The approved command '{command}' has been executed. Result:\n{result}\n\n"
    "Please continue your analysis with this information."
)
BATCH_CONTINUATION_PREFIX = (
    "The approved commands have been executed. Please continue your analysis."
)

ApprovalCallback = Callable[[str, str], bool]
BatchApprovalCallback = Callable[[list[tuple[str, str]]], list[int]]


@dataclass(frozen=True)
class PendingCommand:
    command: str
    reason: str


class PendingQueue:
    """Ordered holding area for approval-required commands within a turn."""

    def __init__(self):
        self._items: list[PendingCommand] = []

    def add(self, pending: PendingCommand):
        self._items.append(pending)

    def snapshot(self) -> list[PendingCommand]:
        return list(self._items)

    def entries(self) -> list[tuple[str, str]]:
        return [(p.command, p.reason) for p in self._items]

    def remove(self, pending: PendingCommand):
        if pending in self._items:
            self._items.remove(pending)

    def clear(self):
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)


def _deny_all(command: str, reason: str) -> bool:
    return False


def _select_none(entries: list[tuple[str, str]]) -> list[int]:
    return []


class ApprovalWorkflow:
    """Resolves a non-empty pending queue into executions, denials and a continuation prompt."""

    def __init__(
        self,
        tools,
        approve: Optional[ApprovalCallback] = None,
        approve_batch: Optional[BatchApprovalCallback] = None,
        notify: Optional[Callable[[str], None]] = None,
    ):
        self._tools = tools
        self._approve = approve or _deny_all
        self._approve_batch = approve_batch or _select_none
        self._notify = notify or (lambda message: None)

    async def resolve(self) -> Optional[str]:
        pending = self._tools.queue.snapshot()
        if not pending:
            return None
        if len(pending) == 1:
            return await self._resolve_single(pending[0])
        return await self._resolve_batch(pending)

    def discard(self, message: str = TURN_FAILED_MESSAGE):
        """Drop every queued command without executing it, logging each as denied."""
        for pending in self._tools.queue.snapshot():
            self._tools.log_denied(pending, message)
        self._tools.queue.clear()

    async def _resolve_single(self, pending: PendingCommand) -> Optional[str]:
        try:
            if not self._ask(pending):
                self._notify(f"Command skipped by user: {pending.command}")
                self._tools.log_denied(pending)
                return None

            self._notify(f"Executing: {pending.command}")
            result = await self._tools.execute_approved(pending)
        finally:
            self._tools.queue.clear()
        return SINGLE_CONTINUATION_TEMPLATE.format(command=pending.command, result=result)

    async def _resolve_batch(self, pending: list[PendingCommand]) -> Optional[str]:
        try:
            results = await self._run_batch(pending)
        finally:
            self._tools.queue.clear()

        if not results:
            return None
        lines = [BATCH_CONTINUATION_PREFIX, ""]
        for command, result in results:
            lines.append(f"Command: {command}\nResult:\n{result}\n")
        return "\n".join(lines).rstrip()

    async def _run_batch(self, pending: list[PendingCommand]) -> list[tuple[str, str]]:
        try:
            selected = self._approve_batch([(p.command, p.reason) for p in pending])
        except Exception as e:
            print(f"WARNING: Batch approval failed, treating as denied: {e}", file=sys.stderr)
            selected = []

        approved_idx = sorted({i for i in selected if 0 <= i < len(pending)})
        approved_set = set(approved_idx)
        for i, cmd in enumerate(pending):
            if i not in approved_set:
                self._tools.log_denied(cmd)

        results = []
        for i in approved_idx:
            cmd = pending[i]
            self._notify(f"Executing: {cmd.command}")
            results.append((cmd.command, await self._tools.execute_approved(cmd)))
        return results

    def _ask(self, pending: PendingCommand) -> bool:
        try:
            return bool(self._approve(pending.command, pending.reason))
        except Exception as e:
            # Fail closed
            print(f"WARNING: Approval prompt failed, treating as denied: {e}", file=sys.stderr)
            return False
