"""Pending queue and the end-of-turn approval workflow."""

import asyncio

import pytest

from action_log import STATE_APPROVAL_REQUESTED, STATE_APPROVED, STATE_DENIED
from approval_queue import (
    BATCH_CONTINUATION_PREFIX,
    DENIAL_MESSAGE,
    TURN_FAILED_MESSAGE,
    ApprovalWorkflow,
    PendingCommand,
    PendingQueue,
)
from helpers import ApprovalTracker, BatchTracker, approval_error, states


def run(coro):
    return asyncio.run(coro)


def _queue_commands(tools, commands):
    for command in commands:
        run(tools.run_powershell(command))


# ---------------------------------------------------------------------------
# PendingQueue
# ---------------------------------------------------------------------------

@pytest.mark.p1
def test_pending_queue_preserves_order():
    queue = PendingQueue()
    first, second = PendingCommand("Stop-Service a", "r1"), PendingCommand("Stop-Service b", "r2")
    queue.add(first)
    queue.add(second)
    assert len(queue) == 2 and queue
    assert queue.snapshot() == [first, second]
    assert queue.entries() == [("Stop-Service a", "r1"), ("Stop-Service b", "r2")]

    queue.remove(first)
    queue.remove(first)
    assert queue.snapshot() == [second]
    queue.clear()
    assert len(queue) == 0 and not queue


# ---------------------------------------------------------------------------
# Single pending command
# ---------------------------------------------------------------------------

@pytest.mark.p0
def test_single_approved_command_executes_and_continues(make_tools):
    tools, executor, log = make_tools()
    _queue_commands(tools, ["Restart-Service Spooler"])
    approve = ApprovalTracker(True)

    prompt = run(ApprovalWorkflow(tools, approve=approve).resolve())

    assert approve.calls == [(
        "Restart-Service Spooler",
        "Command 'Restart-Service' is not a read-only command and requires user approval",
    )]
    assert executor.executed == ["Restart-Service Spooler"]
    assert prompt == (
        "The approved command 'Restart-Service Spooler' has been executed. Result:\n"
        "output of Restart-Service Spooler\n\n"
        "Please continue your analysis with this information."
    )
    assert len(tools.queue) == 0
    assert states(log)[-1] == ("Restart-Service Spooler", STATE_APPROVED)


@pytest.mark.p0
def test_single_rejected_command_is_logged_denied(make_tools):
    tools, executor, log = make_tools()
    _queue_commands(tools, ["Remove-Item C:\\temp\\x"])

    prompt = run(ApprovalWorkflow(tools, approve=ApprovalTracker(False)).resolve())

    assert prompt is None
    assert executor.executed == []
    assert len(tools.queue) == 0
    assert states(log) == [
        ("Remove-Item C:\\temp\\x", STATE_APPROVAL_REQUESTED),
        ("Remove-Item C:\\temp\\x", STATE_DENIED),
    ]
    assert log.entries[-1].output == DENIAL_MESSAGE


@pytest.mark.p0
def test_failing_approval_callback_is_a_denial(make_tools, capsys):
    tools, executor, log = make_tools()
    _queue_commands(tools, ["Stop-Computer"])

    assert run(ApprovalWorkflow(tools, approve=approval_error).resolve()) is None
    assert executor.executed == []
    assert states(log)[-1] == ("Stop-Computer", STATE_DENIED)
    assert "WARNING" in capsys.readouterr().err


@pytest.mark.p1
def test_default_callbacks_deny(make_tools):
    tools, executor, _ = make_tools()
    _queue_commands(tools, ["Stop-Computer"])
    assert run(ApprovalWorkflow(tools).resolve()) is None
    assert executor.executed == []


@pytest.mark.p2
def test_empty_queue_resolves_to_none(make_tools):
    tools, _, _ = make_tools()
    approve = ApprovalTracker(True)
    assert run(ApprovalWorkflow(tools, approve=approve).resolve()) is None
    assert approve.calls == []


# ---------------------------------------------------------------------------
# Batch approval
# ---------------------------------------------------------------------------

COMMANDS = [
    "Stop-Service Spooler",
    "Remove-Item C:\\Windows\\Temp\\*.tmp",
    "Start-Service Spooler",
    "Clear-EventLog -LogName Application",
]


@pytest.mark.p0
def test_batch_subset_executes_in_original_order(make_tools):
    tools, executor, log = make_tools()
    _queue_commands(tools, COMMANDS)
    select = BatchTracker([2, 0])

    prompt = run(ApprovalWorkflow(tools, approve_batch=select).resolve())

    assert [command for command, _ in select.calls[0]] == COMMANDS
    assert executor.executed == [COMMANDS[0], COMMANDS[2]]
    assert len(tools.queue) == 0

    decisions = [entry for entry in states(log) if entry[1] in (STATE_APPROVED, STATE_DENIED)]
    assert sorted(decisions) == sorted([
        (COMMANDS[0], STATE_APPROVED),
        (COMMANDS[2], STATE_APPROVED),
        (COMMANDS[1], STATE_DENIED),
        (COMMANDS[3], STATE_DENIED),
    ])

    assert prompt.startswith(BATCH_CONTINUATION_PREFIX)
    assert prompt.index(COMMANDS[0]) < prompt.index(COMMANDS[2])
    assert COMMANDS[1] not in prompt


@pytest.mark.p0
def test_batch_with_no_selection_denies_all(make_tools):
    tools, executor, log = make_tools()
    _queue_commands(tools, COMMANDS[:2])

    assert run(ApprovalWorkflow(tools, approve_batch=BatchTracker([])).resolve()) is None
    assert executor.executed == []
    assert len(tools.queue) == 0
    assert [s for _, s in states(log)].count(STATE_DENIED) == 2


@pytest.mark.p1
def test_batch_ignores_out_of_range_and_duplicate_indices(make_tools):
    tools, executor, _ = make_tools()
    _queue_commands(tools, COMMANDS[:2])
    run(ApprovalWorkflow(tools, approve_batch=BatchTracker([1, 1, 7, -1])).resolve())
    assert executor.executed == [COMMANDS[1]]


@pytest.mark.p1
def test_batch_callback_failure_denies_all(make_tools, capsys):
    tools, executor, log = make_tools()
    _queue_commands(tools, COMMANDS[:3])

    def broken(entries):
        raise RuntimeError("terminal closed")

    assert run(ApprovalWorkflow(tools, approve_batch=broken).resolve()) is None
    assert executor.executed == []
    assert [s for _, s in states(log)].count(STATE_DENIED) == 3
    assert len(tools.queue) == 0


@pytest.mark.p1
def test_approved_command_failure_reported_in_continuation(make_tools):
    from ps_executor import PowerShellResult

    tools, _, _ = make_tools(responder=lambda cmd: PowerShellResult(False, "", "Access is denied."))
    _queue_commands(tools, COMMANDS[:2])
    prompt = run(ApprovalWorkflow(tools, approve_batch=BatchTracker([0, 1])).resolve())
    assert prompt.count("[ERROR] Access is denied.") == 2


# ---------------------------------------------------------------------------
# Discard on failed turn
# ---------------------------------------------------------------------------

@pytest.mark.p1
def test_discard_logs_every_entry_and_clears(make_tools):
    tools, executor, log = make_tools()
    _queue_commands(tools, COMMANDS[:2])
    notices = []
    workflow = ApprovalWorkflow(tools, approve=ApprovalTracker(True), notify=notices.append)

    workflow.discard()

    assert executor.executed == []
    assert len(tools.queue) == 0
    denied = [e for e in log.entries if e.approval_state == STATE_DENIED]
    assert [e.output for e in denied] == [TURN_FAILED_MESSAGE, TURN_FAILED_MESSAGE]
    assert notices == []


@pytest.mark.p1
def test_queue_cleared_when_execution_raises(make_tools):
    tools, _, _ = make_tools()
    _queue_commands(tools, ["Stop-Service Spooler"])

    async def broken(pending):
        raise RuntimeError("executor crashed")

    tools.execute_approved = broken
    with pytest.raises(RuntimeError):
        run(ApprovalWorkflow(tools, approve=ApprovalTracker(True)).resolve())
    assert len(tools.queue) == 0


@pytest.mark.p1
def test_batch_queue_cleared_when_execution_raises(make_tools):
    tools, _, _ = make_tools()
    _queue_commands(tools, COMMANDS[:2])

    async def broken(pending):
        raise RuntimeError("executor crashed")

    tools.execute_approved = broken
    with pytest.raises(RuntimeError):
        run(ApprovalWorkflow(tools, approve_batch=BatchTracker([0, 1])).resolve())
    assert len(tools.queue) == 0


@pytest.mark.p0
def test_approved_command_rejected_by_backend_continues_with_error(make_tools):
    def responder(command):
        raise ValueError("embedded null byte")

    tools, _, log = make_tools(responder=responder)
    _queue_commands(tools, ["Remove-Item 'a\x00b'"])

    prompt = run(ApprovalWorkflow(tools, approve=ApprovalTracker(True)).resolve())

    assert "[ERROR] Execution failed: embedded null byte" in prompt
    assert len(tools.queue) == 0
    assert states(log)[-1] == ("Remove-Item 'a\x00b'", STATE_APPROVED)
