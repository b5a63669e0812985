#!/usr/bin/env python3
"""TroubleScout CLI — AI-assisted troubleshooting of a Windows Server over PowerShell.

Usage:
    python troublescout.py [--server HOST] [--model MODEL] [--mode {safe,yolo}]
                           [--audit-dir PATH] [--prompt TEXT]
"""

import argparse
import asyncio
import os
import sys

from dotenv import load_dotenv
from google import genai

from console_ui import ConsoleUI
from diagnostic_tools import EXECUTION_MODE_SAFE, EXECUTION_MODES
from troubleshoot_session import DEFAULT_AUDIT_DIR, TroubleshootingSession

load_dotenv()

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_SERVER = "localhost"
MODEL_ENV_VAR = "TROUBLESCOUT_MODEL"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="TroubleScout — AI-assisted Windows Server troubleshooting",
    )
    parser.add_argument("--server",    default=DEFAULT_SERVER,
                        help=f"Target server name or address (default: {DEFAULT_SERVER})")
    parser.add_argument("--model",     default=os.environ.get(MODEL_ENV_VAR),
                        help=f"Gemini model (default: ${MODEL_ENV_VAR} or auto-detected)")
    parser.add_argument("--mode",      choices=list(EXECUTION_MODES), default=EXECUTION_MODE_SAFE,
                        help="safe: non-read-only commands need approval; yolo: run them without asking")
    parser.add_argument("--audit-dir", default=DEFAULT_AUDIT_DIR,
                        help=f"Directory for the JSONL action log (default: {DEFAULT_AUDIT_DIR})")
    parser.add_argument("--prompt",    metavar="TEXT",
                        help="Run a single troubleshooting prompt and exit")
    return parser


async def run(args: argparse.Namespace, client: genai.Client, ui: ConsoleUI) -> int:
    session = TroubleshootingSession(
        target_server=args.server,
        model=args.model,
        execution_mode=args.mode,
        client=client,
        audit_dir=args.audit_dir,
        ui=ui,
    )

    if not await session.initialize():
        return 1

    if args.prompt:
        return 0 if await session.send_message(args.prompt) else 1

    ui.show_banner()
    ui.show_status_panel(session.status_fields())
    await session.run_interactive_loop()
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    # Guard: GEMINI_API_KEY must be present before the client is created
    api_key = os.environ.get("GEMINI_API_KEY")
    if not api_key:
        print("[ERROR] GEMINI_API_KEY is not set.")
        print("        Set it in your environment or add GEMINI_API_KEY=... to a .env file.")
        return 1

    if args.mode != EXECUTION_MODE_SAFE:
        print("WARNING: YOLO mode — approval-required commands will run without confirmation.",
              file=sys.stderr)

    client = genai.Client(api_key=api_key)
    try:
        return asyncio.run(run(args, client, ConsoleUI()))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
