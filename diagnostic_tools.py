"""Diagnostic tools — the tool-invocation surface the AI driver calls.

Public API:
    tools = DiagnosticTools(executor, action_log)
    text = await tools.invoke("run_powershell", {"command": "Get-Service"})
    tools.queue                     # PendingQueue of approval-required commands
    text = await tools.execute_approved(pending)
    tools.log_denied(pending)

Every command goes through command_policy.classify() exactly once. Commands
that run are always wrapped by target_guard.guard_command() first, and their
output is truncated and redacted before it is returned to the driver. Every
outcome is recorded in the ActionLog.
"""

import asyncio
import re
from typing import Optional

from google.genai import types

from action_log import (
    ActionLog,
    STATE_APPROVAL_REQUESTED,
    STATE_APPROVED,
    STATE_BLOCKED,
    STATE_DENIED,
    STATE_SAFE_AUTO,
)
from approval_queue import DENIAL_MESSAGE, PendingCommand, PendingQueue
from command_policy import VERDICT_BLOCKED, VERDICT_NEEDS_APPROVAL, classify
from output_filters import process_output
from ps_executor import PowerShellExecutor
from target_guard import (
    TargetNotVerifiedError,
    guard_command,
    is_target_mismatch,
    split_host_marker,
)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EXECUTION_MODE_SAFE = "safe"
EXECUTION_MODE_YOLO = "yolo"
EXECUTION_MODES = (EXECUTION_MODE_SAFE, EXECUTION_MODE_YOLO)

NO_OUTPUT_TEXT = "[OK] Command completed with no output."

MAX_EVENT_LOG_ENTRIES = 50
MAX_PROCESSES = 100

_EVENT_LOG_NAMES = {"system": "System", "application": "Application", "security": "Security"}
_EVENT_ENTRY_TYPES = {"error": "Error", "warning": "Warning", "information": "Information"}
_PROCESS_SORT_PROPERTIES = {"cpu": "CPU", "memory": "WorkingSet64", "name": "ProcessName"}
_PERFORMANCE_COUNTERS = {
    "cpu": r"'\Processor(_Total)\% Processor Time'",
    "memory": r"'\Memory\Available MBytes', '\Memory\% Committed Bytes In Use'",
    "disk": r"'\PhysicalDisk(_Total)\% Disk Time', '\PhysicalDisk(_Total)\Avg. Disk Queue Length'",
    "network": r"'\Network Interface(*)\Bytes Total/sec'",
}
_ALL_PERFORMANCE_COUNTERS = (
    r"'\Processor(_Total)\% Processor Time', '\Memory\Available MBytes', "
    r"'\Memory\% Committed Bytes In Use', '\PhysicalDisk(_Total)\% Disk Time'"
)

# Name filters are interpolated into a quoted wildcard; keep them to plain name characters
_NAME_FILTER_RE = re.compile(r"[^A-Za-z0-9_.\-* ]")

_SYSTEM_INFO_SCRIPT = """$os = Get-CimInstance Win32_OperatingSystem
$cs = Get-CimInstance Win32_ComputerSystem
$uptime = (Get-Date) - $os.LastBootUpTime
[PSCustomObject]@{
    ComputerName = $env:COMPUTERNAME
    OSName = $os.Caption
    OSVersion = $os.Version
    OSBuild = $os.BuildNumber
    Manufacturer = $cs.Manufacturer
    Model = $cs.Model
    TotalMemoryGB = [math]::Round($cs.TotalPhysicalMemory / 1GB, 2)
    FreeMemoryGB = [math]::Round($os.FreePhysicalMemory / 1MB, 2)
    UptimeDays = [math]::Round($uptime.TotalDays, 2)
    LastBoot = $os.LastBootUpTime
} | Format-List"""

_DISK_SPACE_SCRIPT = """Get-Volume | Where-Object { $_.DriveLetter } |
Select-Object DriveLetter, FileSystemLabel, FileSystem,
    @{N='SizeGB';E={[math]::Round($_.Size / 1GB, 2)}},
    @{N='FreeGB';E={[math]::Round($_.SizeRemaining / 1GB, 2)}},
    @{N='PercentFree';E={[math]::Round(($_.SizeRemaining / $_.Size) * 100, 1)}},
    HealthStatus, OperationalStatus |
Format-Table -AutoSize"""

_NETWORK_INFO_SCRIPT = """Get-NetIPConfiguration |
Where-Object { $_.NetAdapter.Status -eq 'Up' } |
Select-Object InterfaceAlias, InterfaceIndex,
    @{N='IPv4Address';E={($_.IPv4Address.IPAddress -join ', ')}},
    @{N='Gateway';E={($_.IPv4DefaultGateway.NextHop -join ', ')}},
    @{N='DNSServers';E={($_.DNSServer.ServerAddresses -join ', ')}},
    @{N='MacAddress';E={$_.NetAdapter.MacAddress}},
    @{N='LinkSpeed';E={$_.NetAdapter.LinkSpeed}} |
Format-List"""


def _clamp(value, low: int, high: int, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return min(max(number, low), high)


def _sanitize_name_filter(value: Optional[str]) -> str:
    return _NAME_FILTER_RE.sub("", value or "").strip()


# ---------------------------------------------------------------------------
# DiagnosticTools
# ---------------------------------------------------------------------------

class DiagnosticTools:
    """Classifies, guards, executes and logs the commands the AI requests."""

    def __init__(
        self,
        executor: PowerShellExecutor,
        action_log: ActionLog,
        queue: Optional[PendingQueue] = None,
        execution_mode: str = EXECUTION_MODE_SAFE,
    ):
        self._executor = executor
        self._log = action_log
        self._queue = queue if queue is not None else PendingQueue()
        self.execution_mode = execution_mode

    @property
    def queue(self) -> PendingQueue:
        return self._queue

    @property
    def pending_commands(self) -> list[tuple[str, str]]:
        return self._queue.entries()

    @property
    def execution_mode(self) -> str:
        return self._execution_mode

    @execution_mode.setter
    def execution_mode(self, mode: str):
        normalized = (mode or "").strip().lower()
        if normalized not in EXECUTION_MODES:
            raise ValueError(f"Unknown execution mode: {mode!r} (expected 'safe' or 'yolo')")
        self._execution_mode = normalized

    @property
    def target(self) -> str:
        return self._executor.actual_computer_name or self._executor.target_server

    # --- Tool dispatch ---

    async def invoke(self, tool_name: str, tool_args: Optional[dict]) -> str:
        """Route a driver function call to the matching tool."""
        args = dict(tool_args or {})

        if tool_name == "run_powershell":
            return await self.run_powershell(args.get("command", ""))
        if tool_name == "get_system_info":
            return await self.get_system_info()
        if tool_name == "get_event_logs":
            return await self.get_event_logs(
                args.get("log_name", "System"), args.get("count", 20), args.get("entry_type", "All"),
            )
        if tool_name == "get_services":
            return await self.get_services(args.get("status", "All"), args.get("name_filter"))
        if tool_name == "get_processes":
            return await self.get_processes(
                args.get("name_filter"), args.get("sort_by", "Memory"), args.get("top", 20),
            )
        if tool_name == "get_disk_space":
            return await self.get_disk_space()
        if tool_name == "get_network_info":
            return await self.get_network_info()
        if tool_name == "get_performance_counters":
            return await self.get_performance_counters(args.get("category", "All"))

        return f"[ERROR] Unknown tool: {tool_name}"

    # --- Arbitrary commands ---

    async def run_powershell(self, command: str) -> str:
        return await self._run_classified(command, command)

    async def _run_classified(self, command: str, display_name: str) -> str:
        validation = classify(command)

        if validation.verdict == VERDICT_BLOCKED:
            text = f"[BLOCKED] {validation.reason}"
            self._log.record(self.target, display_name, text, STATE_BLOCKED)
            return text

        if validation.verdict == VERDICT_NEEDS_APPROVAL:
            if self._execution_mode == EXECUTION_MODE_YOLO:
                text = await self._execute_guarded(command)
                self._log.record(self.target, display_name, text, STATE_APPROVED)
                return text

            reason = validation.reason or "Requires user approval"
            self._queue.add(PendingCommand(command, reason))
            text = (
                f"[PENDING APPROVAL] Command '{command}' requires user approval before execution. "
                f"Reason: {reason}. "
                "The command has been queued and will be shown to the user for approval."
            )
            self._log.record(self.target, display_name, text, STATE_APPROVAL_REQUESTED)
            return text

        text = await self._execute_guarded(command)
        self._log.record(self.target, display_name, text, STATE_SAFE_AUTO)
        return text

    # --- Approval outcomes ---

    async def execute_approved(self, pending: PendingCommand) -> str:
        """Run an operator-approved command through the guard, without reclassifying."""
        text = await self._execute_guarded(pending.command)
        self._queue.remove(pending)
        self._log.record(self.target, pending.command, text, STATE_APPROVED)
        return text

    def log_denied(self, pending: PendingCommand, message: str = DENIAL_MESSAGE):
        self._log.record(self.target, pending.command, message, STATE_DENIED)

    # --- Guarded execution ---

    async def _execute_guarded(self, command: str) -> str:
        try:
            script = guard_command(command, self._executor.actual_computer_name)
        except TargetNotVerifiedError as e:
            return f"[ERROR] {e}. Reconnect to the target with /connect before running commands."

        try:
            result = await asyncio.to_thread(self._executor.execute, script)
        except Exception as e:
            return f"[ERROR] Execution failed: {e}"

        reported_host, body = split_host_marker(result.output or "")
        # The guard prints the host marker only after the identity check passed
        if reported_host is None and is_target_mismatch(result.error):
            self._executor.invalidate_verification()
            return (
                f"[TARGET MISMATCH] {result.error}\n"
                "The command did not run. Target verification has been cleared; "
                "the operator must reconnect with /connect before further commands run."
            )

        if not result.success:
            return f"[ERROR] {result.error or 'Unknown error occurred'}"

        if not body.strip():
            return NO_OUTPUT_TEXT
        text, _ = process_output(body.strip("\r\n"))
        return text

    # --- Canned read-only diagnostics ---

    async def get_system_info(self) -> str:
        return await self._run_classified(_SYSTEM_INFO_SCRIPT, "Get-SystemInfo")

    async def get_event_logs(self, log_name: str = "System", count=20, entry_type: str = "All") -> str:
        log = _EVENT_LOG_NAMES.get(str(log_name).strip().lower(), "System")
        newest = _clamp(count, 1, MAX_EVENT_LOG_ENTRIES, 20)
        kind = _EVENT_ENTRY_TYPES.get(str(entry_type).strip().lower())
        type_filter = f" -EntryType {kind}" if kind else ""
        script = (
            f"Get-EventLog -LogName {log}{type_filter} -Newest {newest} |\n"
            "Select-Object TimeGenerated, EntryType, Source, EventID, Message |\n"
            "Format-Table -AutoSize -Wrap"
        )
        return await self._run_classified(script, "Get-EventLogs")

    async def get_services(self, status: str = "All", name_filter: Optional[str] = None) -> str:
        name = _sanitize_name_filter(name_filter)
        name_clause = f" -Name '*{name}*'" if name else ""
        wanted = str(status).strip().lower()
        where_clause = ""
        if wanted in ("running", "stopped"):
            where_clause = f" | Where-Object {{ $_.Status -eq '{wanted.capitalize()}' }}"
        script = (
            f"Get-Service{name_clause}{where_clause} |\n"
            "Select-Object Status, Name, DisplayName, StartType |\n"
            "Sort-Object Status, Name |\n"
            "Format-Table -AutoSize"
        )
        return await self._run_classified(script, "Get-Services")

    async def get_processes(self, name_filter: Optional[str] = None, sort_by: str = "Memory", top=20) -> str:
        name = _sanitize_name_filter(name_filter)
        name_clause = f" -Name '*{name}*'" if name else ""
        sort_property = _PROCESS_SORT_PROPERTIES.get(str(sort_by).strip().lower(), "ProcessName")
        first = _clamp(top, 1, MAX_PROCESSES, 20)
        script = (
            f"Get-Process{name_clause} |\n"
            f"Sort-Object {sort_property} -Descending |\n"
            f"Select-Object -First {first} ProcessName, Id,\n"
            "    @{N='CPU(s)';E={[math]::Round($_.CPU, 2)}},\n"
            "    @{N='Memory(MB)';E={[math]::Round($_.WorkingSet64 / 1MB, 2)}},\n"
            "    @{N='Handles';E={$_.HandleCount}},\n"
            "    @{N='Threads';E={$_.Threads.Count}} |\n"
            "Format-Table -AutoSize"
        )
        return await self._run_classified(script, "Get-Processes")

    async def get_disk_space(self) -> str:
        return await self._run_classified(_DISK_SPACE_SCRIPT, "Get-DiskSpace")

    async def get_network_info(self) -> str:
        return await self._run_classified(_NETWORK_INFO_SCRIPT, "Get-NetworkInfo")

    async def get_performance_counters(self, category: str = "All") -> str:
        counters = _PERFORMANCE_COUNTERS.get(str(category).strip().lower(), _ALL_PERFORMANCE_COUNTERS)
        script = (
            f"Get-Counter -Counter {counters} -ErrorAction SilentlyContinue |\n"
            "Select-Object -ExpandProperty CounterSamples |\n"
            "Select-Object Path, @{N='Value';E={[math]::Round($_.CookedValue, 2)}} |\n"
            "Format-Table -AutoSize"
        )
        return await self._run_classified(script, "Get-PerformanceCounters")

    # --- Tool declarations ---

    @staticmethod
    def tool_declarations() -> types.Tool:
        S, T = types.Schema, types.Type

        return types.Tool(function_declarations=[
            types.FunctionDeclaration(
                name="run_powershell",
                description=(
                    "Execute a PowerShell command on the target Windows server. "
                    "Only Get-* commands run automatically; other commands require user approval. "
                    "Blocked commands (credential retrieval) are refused unconditionally — do not retry."
                ),
                parameters=S(type=T.OBJECT, properties={
                    "command": S(type=T.STRING, description="The PowerShell command to execute."),
                }, required=["command"]),
            ),
            types.FunctionDeclaration(
                name="get_system_info",
                description="Get basic system information including OS version, hostname, uptime, and hardware specs.",
            ),
            types.FunctionDeclaration(
                name="get_event_logs",
                description="Get recent Windows Event Log entries. Supports System, Application, and Security logs.",
                parameters=S(type=T.OBJECT, properties={
                    "log_name":   S(type=T.STRING, enum=["System", "Application", "Security"],
                                    description="Log name. Default System."),
                    "count":      S(type=T.INTEGER, description="Number of recent entries to retrieve (max 50)."),
                    "entry_type": S(type=T.STRING, enum=["Error", "Warning", "Information", "All"],
                                    description="Filter by entry type. Default All."),
                }),
            ),
            types.FunctionDeclaration(
                name="get_services",
                description="Get Windows services status. Can filter by status (Running, Stopped) or search by name.",
                parameters=S(type=T.OBJECT, properties={
                    "status":      S(type=T.STRING, enum=["Running", "Stopped", "All"],
                                     description="Filter by service status. Default All."),
                    "name_filter": S(type=T.STRING, description="Search filter for service name (supports wildcards)."),
                }),
            ),
            types.FunctionDeclaration(
                name="get_processes",
                description="Get running processes with CPU and memory usage. Can filter by name or sort by resource usage.",
                parameters=S(type=T.OBJECT, properties={
                    "name_filter": S(type=T.STRING, description="Filter by process name (supports wildcards)."),
                    "sort_by":     S(type=T.STRING, enum=["CPU", "Memory", "Name"],
                                     description="Sort order. Default Memory."),
                    "top":         S(type=T.INTEGER, description="Number of top processes to show (max 100)."),
                }),
            ),
            types.FunctionDeclaration(
                name="get_disk_space",
                description="Get disk space information for all volumes including free space and health status.",
            ),
            types.FunctionDeclaration(
                name="get_network_info",
                description="Get network adapter information including IP addresses, gateways, and DNS servers.",
            ),
            types.FunctionDeclaration(
                name="get_performance_counters",
                description="Get performance counter values for CPU, memory, disk, and network metrics.",
                parameters=S(type=T.OBJECT, properties={
                    "category": S(type=T.STRING, enum=["CPU", "Memory", "Disk", "Network", "All"],
                                  description="Counter category. Default All."),
                }),
            ),
        ])
