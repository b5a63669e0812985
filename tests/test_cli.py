"""Command-line entry point: argument parsing and startup guards."""

import os
from unittest.mock import patch

import pytest

import troublescout
from troublescout import DEFAULT_SERVER, build_parser, main
from troubleshoot_session import DEFAULT_AUDIT_DIR


@pytest.mark.p1
def test_parser_defaults():
    with patch.dict(os.environ, {}, clear=True):
        args = build_parser().parse_args([])
    assert args.server == DEFAULT_SERVER
    assert args.model is None
    assert args.mode == "safe"
    assert args.audit_dir == DEFAULT_AUDIT_DIR
    assert args.prompt is None


@pytest.mark.p1
def test_parser_options():
    args = build_parser().parse_args([
        "--server", "srv01", "--model", "gemini-2.5-pro", "--mode", "yolo",
        "--audit-dir", "/tmp/audit", "--prompt", "Why is IIS down?",
    ])
    assert (args.server, args.model, args.mode) == ("srv01", "gemini-2.5-pro", "yolo")
    assert args.audit_dir == "/tmp/audit"
    assert args.prompt == "Why is IIS down?"


@pytest.mark.p1
def test_model_default_from_environment():
    with patch.dict(os.environ, {"TROUBLESCOUT_MODEL": "gemini-2.5-flash"}):
        assert build_parser().parse_args([]).model == "gemini-2.5-flash"


@pytest.mark.p2
def test_invalid_mode_rejected():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["--mode", "turbo"])


@pytest.mark.p0
def test_missing_api_key_exits_before_client(capsys):
    with patch.dict(os.environ, {}, clear=True), \
            patch.object(troublescout.genai, "Client") as client_cls:
        assert main(["--server", "srv01"]) == 1
    client_cls.assert_not_called()
    assert "GEMINI_API_KEY is not set" in capsys.readouterr().out


@pytest.mark.p1
def test_main_runs_session_with_client():
    async def fake_run(args, client, ui):
        return 0

    with patch.dict(os.environ, {"GEMINI_API_KEY": "test-key"}), \
            patch.object(troublescout.genai, "Client") as client_cls, \
            patch.object(troublescout, "run", side_effect=fake_run) as run_mock:
        assert main(["--prompt", "hello"]) == 0

    client_cls.assert_called_once_with(api_key="test-key")
    assert run_mock.call_args.args[0].prompt == "hello"


@pytest.mark.p2
def test_yolo_warning_on_stderr(capsys):
    async def fake_run(args, client, ui):
        return 0

    with patch.dict(os.environ, {"GEMINI_API_KEY": "test-key"}), \
            patch.object(troublescout.genai, "Client"), \
            patch.object(troublescout, "run", side_effect=fake_run):
        main(["--mode", "yolo"])
    assert "YOLO mode" in capsys.readouterr().err
