"""Shared fixtures for TroubleScout tests.

Fixtures are auto-injected by pytest. Helper functions and fakes are in helpers.py.
"""

import sys
from pathlib import Path

import pytest

# Add repository root and tests directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from action_log import ActionLog
from diagnostic_tools import DiagnosticTools
from troubleshoot_session import TroubleshootingSession
from helpers import FakeDriver, FakeExecutor, RecordingUI


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_audit_dir(tmp_path):
    return str(tmp_path / "audit")


@pytest.fixture
def make_executor():
    """Factory fixture for a connected FakeExecutor."""
    def _make(host="SRV01", executing_host=None, responder=None, connected=True):
        executor = FakeExecutor(target_server=host, host=host,
                                executing_host=executing_host, responder=responder)
        if connected:
            executor.connect()
        return executor
    return _make


@pytest.fixture
def make_action_log(tmp_audit_dir):
    def _make(sink=None, session_id="test_session"):
        return ActionLog(session_id, audit_dir=tmp_audit_dir, sink=sink)
    return _make


@pytest.fixture
def make_tools(make_executor, make_action_log):
    """Factory fixture returning (tools, executor, action_log)."""
    def _make(execution_mode="safe", executor=None, sink=None, **executor_kwargs):
        executor = executor or make_executor(**executor_kwargs)
        log = make_action_log(sink=sink)
        return DiagnosticTools(executor, log, execution_mode=execution_mode), executor, log
    return _make


@pytest.fixture
def make_session(tmp_audit_dir):
    """Factory fixture returning (session, driver, ui, executors) with fakes wired in.

    `executors` maps each target name the session connected to onto its FakeExecutor.
    """
    def _make(scripts=None, approve=None, select=None, inputs=None, execution_mode="safe",
              target="SRV01", hosts=None, executing_hosts=None, responder=None, driver=None,
              log_sink=None, connect_errors=None):
        hosts = hosts or {}
        executing_hosts = executing_hosts or {}
        connect_errors = connect_errors or {}
        executors = {}

        def factory(name):
            host = hosts.get(name, name.split(".")[0].upper())
            executor = FakeExecutor(target_server=name, host=host,
                                    executing_host=executing_hosts.get(name), responder=responder,
                                    connect_error=connect_errors.get(name))
            executors[name] = executor
            return executor

        driver = driver or FakeDriver(scripts)
        ui = RecordingUI(approve=approve, select=select, inputs=inputs)
        session = TroubleshootingSession(
            target_server=target,
            execution_mode=execution_mode,
            driver=driver,
            audit_dir=tmp_audit_dir,
            ui=ui,
            log_sink=log_sink,
            executor_factory=factory,
            session_id="test_session",
        )
        return session, driver, ui, executors
    return _make
