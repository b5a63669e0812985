"""TroubleScout session orchestrator — drives conversational turns against one target.

Public API:
    session = TroubleshootingSession("srv01", client=genai.Client(api_key=...))
    if await session.initialize():
        await session.send_message("IIS stopped serving pages an hour ago")
        await session.run_interactive_loop()

One turn: subscribe to the driver, send the prompt, consume events until
TurnIdle or SessionError, dispose the subscription, then resolve the pending
approval queue. Approved commands produce a continuation prompt, which runs as
a new turn in the same send_message() call. Only one turn is ever in flight.
"""

import asyncio
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from google import genai

from action_log import ActionLog, LogSink
from approval_queue import ApprovalWorkflow
from console_ui import ConsoleUI
from diagnostic_tools import EXECUTION_MODE_SAFE, EXECUTION_MODE_YOLO, EXECUTION_MODES, DiagnosticTools
from gemini_driver import MODEL_DETECTION_TIMEOUT_SECONDS, GeminiDriver, resolve_model
from ps_executor import PowerShellExecutor
from session_events import (
    ContentFragment,
    FinalMessage,
    SessionError,
    SessionEvent,
    ToolCompleted,
    ToolStarted,
    TurnIdle,
    TurnStart,
)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_AUDIT_DIR = "./audit"

PHASE_IDLE = "Idle"
PHASE_SENDING = "Sending"
PHASE_STREAMING = "Streaming"
PHASE_RESOLVING = "Resolving"

OUTCOME_COMPLETED = "completed"
OUTCOME_ERRORED = "errored"

MUTATING_INTENT_RE = re.compile(
    r"\b(empty|clear|delete|remove|restart|stop|start|set|enable|disable|kill|format|reset|recycle\s+bin|trash)\b",
    re.IGNORECASE,
)

FORMATTING_REQUIREMENT = (
    "\n\nResponse formatting requirement: Always reply in Markdown with short sections, "
    "bullet points, and blank lines between sections. For tabular data, use compact Markdown "
    "tables (pipe syntax), avoid ASCII-art aligned tables, and if width is large use a concise "
    "bullet list instead."
)
EXECUTION_SAFETY_REQUIREMENT = (
    "\n\nExecution safety requirement: If this request can modify system state, you must call "
    "run_powershell with the exact command. Do not claim any action was executed unless tool "
    "output confirms execution."
)

SYSTEM_PROMPT_TEMPLATE = """You are TroubleScout, an expert Windows Server troubleshooting assistant.
Your role is to diagnose issues on Windows servers by analyzing system data and providing actionable insights.

## Target Server Context
- You are currently connected to {target_info}
- ALL commands and diagnostic operations will execute on this target server
- When gathering data or making observations, you MUST always state which server the data comes from
- Every command output starts with a "[TroubleScout host: NAME]" line stripped before you see it; commands that reach the wrong host fail with TARGET MISMATCH
- If the user doesn't specify a server in their question, assume they mean the current target: {target}

## Your Capabilities
- Execute read-only PowerShell commands (Get-*) to gather diagnostic information from the target server
- Analyze Windows Event Logs, services, processes, performance counters, disk space, and network configuration
- Identify patterns, anomalies, and potential root causes
- Provide clear, prioritized recommendations

## Troubleshooting Approach
1. **Understand the Problem**: Ask clarifying questions if the issue description is vague
2. **Gather Data**: Use the diagnostic tools to collect relevant information FROM THE TARGET SERVER
3. **Analyze**: Look for errors, warnings, resource exhaustion, or configuration issues
4. **Diagnose**: Form hypotheses about the root cause based on evidence
5. **Recommend**: Provide clear, actionable next steps

## Response Format
- ALWAYS start your response by confirming which server you're analyzing (e.g., "Analyzing {target}...")
- Always format your response as Markdown, with short sections and bullet lists
- For tabular data, use compact Markdown tables (pipe syntax)
- Highlight critical findings with **bold**
- For remediation commands (non-Get commands), explain what they do and why they're needed
- Always explain your reasoning

## Safety
- Only read-only Get-* commands execute automatically
- In Safe mode, remediation commands require explicit user approval; they are queued and run after your reply
- In YOLO mode, remediation commands can execute without confirmation
- Credential retrieval commands (Get-Credential, Get-Secret) are always blocked; do not retry them
- For ANY mutating task, you MUST call the run_powershell tool with the exact command
- Never claim a command was executed unless run_powershell returned execution output
- If no tool was executed, clearly state that no command has been run yet
- Never suggest commands that could cause data loss without clear warnings

Remember: Your goal is to help the user understand what's wrong with {target} and guide them to a solution,
not just dump raw data. Interpret the findings and provide expert analysis."""


def build_system_prompt(target_server: str) -> str:
    if target_server.lower() == "localhost":
        target_info = "the local machine (localhost)"
    else:
        target_info = f"the remote server: {target_server}"
    return SYSTEM_PROMPT_TEMPLATE.format(target_info=target_info, target=target_server)


def build_prompt_for_execution_safety(user_message: str) -> str:
    """Append the formatting requirement, plus the execution-safety requirement on mutating intent."""
    prompt = user_message + FORMATTING_REQUIREMENT
    if MUTATING_INTENT_RE.search(user_message):
        prompt += EXECUTION_SAFETY_REQUIREMENT
    return prompt


def _new_session_id() -> str:
    return f"troublescout_{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}"


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------

@dataclass
class ConversationTurn:
    prompt: str
    fragments: list[str] = field(default_factory=list)
    seen_fragment_ids: set[str] = field(default_factory=set)
    outcome: Optional[str] = None
    error: Optional[str] = None
    line_break_pending: bool = False

    @property
    def text(self) -> str:
        return "".join(self.fragments)

    @property
    def has_output(self) -> bool:
        return bool(self.fragments)

    @property
    def finished(self) -> bool:
        return self.outcome is not None

    def add_fragment(self, fragment_id: str, text: str) -> bool:
        """Append a fragment unless its id was already seen. Returns True when appended."""
        if fragment_id in self.seen_fragment_ids:
            return False
        self.seen_fragment_ids.add(fragment_id)
        self.fragments.append(text)
        return True


@dataclass
class SessionState:
    target_server: str
    execution_mode: str = EXECUTION_MODE_SAFE
    model: Optional[str] = None
    phase: str = PHASE_IDLE
    connected: bool = False
    turns: list[ConversationTurn] = field(default_factory=list)


# ---------------------------------------------------------------------------
# TroubleshootingSession
# ---------------------------------------------------------------------------

class TroubleshootingSession:
    """Turn state machine tying the AI driver, tool layer and approval workflow together."""

    def __init__(
        self,
        target_server: str = "localhost",
        model: Optional[str] = None,
        execution_mode: str = EXECUTION_MODE_SAFE,
        client: Optional[genai.Client] = None,
        driver=None,
        audit_dir: Optional[str] = DEFAULT_AUDIT_DIR,
        ui: Optional[ConsoleUI] = None,
        log_sink: Optional[LogSink] = None,
        executor_factory: Callable[[str], PowerShellExecutor] = PowerShellExecutor,
        session_id: Optional[str] = None,
        model_detection_timeout: float = MODEL_DETECTION_TIMEOUT_SECONDS,
    ):
        target = (target_server or "").strip() or "localhost"
        if execution_mode not in EXECUTION_MODES:
            raise ValueError(f"Unknown execution mode: {execution_mode!r}")

        self.session_id = session_id or _new_session_id()
        self._state = SessionState(target_server=target, execution_mode=execution_mode)
        self._requested_model = model
        self._client = client
        self._driver = driver
        self._ui = ui or ConsoleUI()
        self._external_sink = log_sink
        self._executor_factory = executor_factory
        self._model_detection_timeout = model_detection_timeout

        self.action_log = ActionLog(self.session_id, audit_dir=audit_dir, sink=self._on_action)
        self._executor = executor_factory(target)
        self._tools = DiagnosticTools(self._executor, self.action_log, execution_mode=execution_mode)

    # --- Accessors ---

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def target_server(self) -> str:
        return self._state.target_server

    @property
    def execution_mode(self) -> str:
        return self._state.execution_mode

    @property
    def tools(self) -> DiagnosticTools:
        return self._tools

    @property
    def executor(self) -> PowerShellExecutor:
        return self._executor

    @property
    def pending_commands(self) -> list[tuple[str, str]]:
        return self._tools.pending_commands

    @property
    def selected_model(self) -> str:
        if self._driver is not None and getattr(self._driver, "model", None):
            return self._driver.model
        return self._state.model or self._requested_model or "default"

    # --- Log sink ---

    def _on_action(self, timestamp, target, command, output, approval_state, source):
        self._ui.show_action(approval_state, command)
        if self._external_sink is not None:
            self._external_sink(timestamp, target, command, output, approval_state, source)

    # --- Bootstrap ---

    async def initialize(self) -> bool:
        """Verify the target host, pick the model, and configure the AI driver."""
        self._ui.show_info(f"Connecting to {self.target_server}...")
        ok, error = await asyncio.to_thread(self._executor.connect)
        if not ok:
            self._ui.show_error("Connection Failed", error or f"Unable to connect to {self.target_server}")
            return False
        self._state.connected = True
        self._ui.show_success(f"Connected: {self._executor.get_connection_mode()}")

        system_prompt = build_system_prompt(self.target_server)
        if self._driver is None:
            if self._client is None:
                raise ValueError("A Gemini client or a conversation driver is required")
            model = await resolve_model(
                self._client, self._requested_model, timeout=self._model_detection_timeout,
            )
            self._driver = GeminiDriver(
                self._client,
                model,
                tools=DiagnosticTools.tool_declarations(),
                tool_handler=self._invoke_tool,
                system_instruction=system_prompt,
            )
        else:
            self._driver.tool_handler = self._invoke_tool
            self._driver.reset(system_prompt)

        self._state.model = self.selected_model
        return True

    async def _invoke_tool(self, tool_name: str, tool_args: dict) -> str:
        return await self._tools.invoke(tool_name, tool_args)

    # --- Turns ---

    async def send_message(self, user_message: str) -> bool:
        """Run one operator prompt and every continuation turn it leads to.

        Returns False when a turn errored or when called while a turn is active.
        """
        if self._state.phase != PHASE_IDLE:
            self._ui.show_warning("A turn is already in progress; wait for it to finish.")
            return False
        if self._driver is None:
            self._ui.show_error("Not initialized", "The session has no AI driver; call initialize() first.")
            return False
        if self._tools.queue:
            raise RuntimeError("Pending approvals must be resolved before a new prompt is accepted")

        workflow = ApprovalWorkflow(
            self._tools,
            approve=self._ui.prompt_command_approval,
            approve_batch=self._ui.prompt_batch_approval,
            notify=self._ui.show_info,
        )

        prompt: Optional[str] = build_prompt_for_execution_safety(user_message)
        succeeded = True
        try:
            while prompt is not None:
                turn = await self._process_turn(prompt)
                if turn.outcome == OUTCOME_ERRORED:
                    workflow.discard()
                    succeeded = False
                    break
                self._state.phase = PHASE_RESOLVING
                prompt = await workflow.resolve()
        finally:
            self._state.phase = PHASE_IDLE
        return succeeded

    async def _process_turn(self, prompt: str) -> ConversationTurn:
        turn = ConversationTurn(prompt=prompt)
        self._state.turns.append(turn)
        done = asyncio.Event()

        def on_event(event: SessionEvent):
            if turn.finished:
                return
            self._dispatch_event(turn, event)
            if turn.finished:
                done.set()

        self._state.phase = PHASE_SENDING
        with self._driver.subscribe(on_event):
            try:
                await self._driver.send(prompt)
            except Exception as e:
                turn.outcome = OUTCOME_ERRORED
                turn.error = str(e)
                self._ui.show_error("Send Failed", turn.error)
            else:
                self._state.phase = PHASE_STREAMING
                await done.wait()

        self._ui.end_ai_response()
        return turn

    def _dispatch_event(self, turn: ConversationTurn, event: SessionEvent):
        if isinstance(event, TurnStart):
            turn.line_break_pending = turn.has_output
            self._ui.show_thinking("Analyzing")

        elif isinstance(event, ToolStarted):
            turn.line_break_pending = turn.has_output
            self._ui.show_tool_execution(event.name or "diagnostic")

        elif isinstance(event, ToolCompleted):
            turn.line_break_pending = turn.has_output
            self._ui.show_thinking("Processing results")

        elif isinstance(event, ContentFragment):
            if event.id in turn.seen_fragment_ids:
                return
            first = not turn.has_output
            if turn.line_break_pending and not first:
                turn.fragments.append("\n")
                self._ui.write_ai_response("\n")
            turn.line_break_pending = False
            turn.add_fragment(event.id, event.text)
            if first:
                self._ui.start_ai_response()
            self._ui.write_ai_response(event.text)

        elif isinstance(event, FinalMessage):
            # Non-streaming fallback
            if not turn.has_output and event.text:
                self._ui.start_ai_response()
                self._ui.write_ai_response(event.text)
                turn.add_fragment("final-message", event.text)

        elif isinstance(event, SessionError):
            turn.outcome = OUTCOME_ERRORED
            turn.error = event.message or "Unknown error"
            self._ui.end_ai_response()
            self._ui.show_error("Session Error", turn.error)

        elif isinstance(event, TurnIdle):
            turn.outcome = OUTCOME_COMPLETED

    # --- Target and mode ---

    async def reconnect(self, new_server: str) -> bool:
        """Switch to another server; the current session is kept when verification fails."""
        new_server = (new_server or "").strip()
        if not new_server:
            self._ui.show_warning("Server name cannot be empty")
            return False

        if new_server.lower() == self.target_server.lower() and self._executor.actual_computer_name:
            self._ui.show_info(f"Already connected to {new_server}")
            return True

        executor = self._executor_factory(new_server)
        ok, error = await asyncio.to_thread(executor.connect)
        if not ok:
            self._ui.show_error("Connection Failed", error or f"Unable to connect to {new_server}")
            return False

        self._executor = executor
        self._tools = DiagnosticTools(executor, self.action_log, execution_mode=self.execution_mode)
        self._state.target_server = new_server
        self._state.connected = True
        if self._driver is not None:
            self._driver.reset(build_system_prompt(new_server))
        return True

    def set_execution_mode(self, mode: str):
        normalized = (mode or "").strip().lower()
        self._tools.execution_mode = normalized
        self._state.execution_mode = normalized

    def status_fields(self) -> list[tuple[str, str]]:
        audit_path = self.action_log.audit_path
        return [
            ("Session", self.session_id),
            ("Target", self.target_server),
            ("Connection", self._executor.get_connection_mode()),
            ("Verified host", self._executor.actual_computer_name or "not verified"),
            ("Model", self.selected_model),
            ("Execution mode", self.execution_mode),
            ("Turns", str(len(self._state.turns))),
            ("Actions logged", str(len(self.action_log.entries))),
            ("Audit log", str(audit_path) if audit_path else "disabled"),
        ]

    # --- Interactive loop ---

    async def run_interactive_loop(self):
        ui = self._ui
        ui.show_info("Describe the problem, or type /help for commands.")
        while True:
            try:
                raw = ui.get_user_input()
            except (EOFError, KeyboardInterrupt):
                ui.show_info("Ending session. Goodbye!")
                break

            text = raw.strip()
            if not text:
                continue

            command, _, argument = text.partition(" ")
            command = command.lower()
            argument = argument.strip()

            if command in ("/exit", "/quit") or text.lower() in ("exit", "quit"):
                ui.show_info("Ending session. Goodbye!")
                break

            if command == "/help":
                ui.show_help()
            elif command == "/status":
                ui.show_status_panel(self.status_fields())
            elif command == "/history":
                ui.show_command_history(self._executor.get_command_history())
            elif command == "/clear":
                if self._driver is not None:
                    self._driver.reset(build_system_prompt(self.target_server))
                ui.show_banner()
                ui.show_status_panel(self.status_fields())
            elif command == "/mode":
                self._handle_mode_command(argument)
            elif command == "/connect":
                if not argument:
                    ui.show_warning("Usage: /connect <server>")
                elif await self.reconnect(argument):
                    ui.show_success(f"Connected to {self.target_server}")
                    ui.show_status_panel(self.status_fields())
            elif command.startswith("/"):
                ui.show_warning(f"Unknown command: {command}. Type /help for commands.")
            else:
                await self.send_message(text)

    def _handle_mode_command(self, argument: str):
        ui = self._ui
        if not argument:
            ui.show_info(f"Current mode: {self.execution_mode}")
            ui.show_info("Usage: /mode <safe|yolo>")
            return
        mode = argument.lower()
        if mode not in EXECUTION_MODES:
            ui.show_warning("Invalid mode. Use: safe or yolo.")
            return
        if mode == EXECUTION_MODE_YOLO and self.execution_mode != EXECUTION_MODE_YOLO:
            if not ui.confirm("YOLO mode runs approval-required commands without asking. Continue?"):
                ui.show_info(f"Execution mode unchanged: {self.execution_mode}")
                return
        self.set_execution_mode(mode)
        ui.show_success(f"Execution mode set to: {self.execution_mode}")
