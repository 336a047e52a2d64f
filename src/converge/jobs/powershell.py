# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""PowerShell job channel.

Runs jobs through pwsh/powershell.exe on the execution target as an asyncio
subprocess. The job script is dot-sourced inside a small wrapper that:

- binds the job variables (passed as JSON in the environment)
- turns the verbose/debug/warning/information/error streams into marker
  lines so they arrive as LogEvents while the script is still running
- exposes Write-ConvergeProgress for progress reporting
- emits the requested output variables as a single JSON marker line
"""

import asyncio
import json
import locale
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, Optional

from converge.errors import ExecutionFailed
from converge.jobs.channel import JobChannel, JobEmitter
from converge.schemas.job import Job, JobResult, JobStatus, LogLevel

logger = logging.getLogger(__name__)

MARKER = "##converge["

WRAPPER_TEMPLATE = r"""
$ErrorActionPreference = 'Stop'
$ProgressPreference = 'SilentlyContinue'
{preferences}

function Write-ConvergeMarker([string]$Kind, [string]$Text) {{
    [Console]::Out.WriteLine('##converge[' + $Kind + ']' + $Text)
    [Console]::Out.Flush()
}}

function Write-ConvergeProgress([double]$PercentComplete = -1, [string]$Activity = $null) {{
    $payload = @{{ percent = $PercentComplete; activity = $Activity }}
    Write-ConvergeMarker 'progress' ($payload | ConvertTo-Json -Compress)
}}

function Write-ConvergeRecord($Record) {{
    if ($Record -is [System.Management.Automation.VerboseRecord]) {{
        Write-ConvergeMarker 'log:debug' $Record.Message
    }} elseif ($Record -is [System.Management.Automation.DebugRecord]) {{
        Write-ConvergeMarker 'log:debug' $Record.Message
    }} elseif ($Record -is [System.Management.Automation.WarningRecord]) {{
        Write-ConvergeMarker 'log:warning' $Record.Message
    }} elseif ($Record -is [System.Management.Automation.InformationRecord]) {{
        Write-ConvergeMarker 'log:information' ([string]$Record.MessageData)
    }} elseif ($Record -is [System.Management.Automation.ErrorRecord]) {{
        Write-ConvergeMarker 'log:error' ([string]$Record)
    }} elseif ($null -ne $Record) {{
        ($Record | Out-String -Stream) | ForEach-Object {{
            [Console]::Out.WriteLine($_)
            [Console]::Out.Flush()
        }}
    }}
}}

$__convergeVariables = $env:CONVERGE_JOB_VARIABLES | ConvertFrom-Json
if ($__convergeVariables) {{
    foreach ($__convergeProperty in $__convergeVariables.PSObject.Properties) {{
        Set-Variable -Name $__convergeProperty.Name -Value $__convergeProperty.Value
    }}
}}
$__convergeBaseline = @(Get-Variable | ForEach-Object {{ $_.Name }})

try {{
    . $env:CONVERGE_JOB_SCRIPT 3>&1 4>&1 5>&1 6>&1 | ForEach-Object {{ Write-ConvergeRecord $_ }}
}} catch {{
    Write-ConvergeMarker 'log:error' $_.Exception.Message
    exit 1
}}

{capture}

if ($LASTEXITCODE) {{ Write-ConvergeMarker 'exit' ([string]$LASTEXITCODE) }} else {{ Write-ConvergeMarker 'exit' '0' }}
exit 0
"""

CAPTURE_NAMED = r"""
$__convergeOut = @{{}}
foreach ($__convergeName in @({names})) {{
    $__convergeVar = Get-Variable -Name $__convergeName -ErrorAction SilentlyContinue
    if ($__convergeVar) {{ $__convergeOut[$__convergeName] = $__convergeVar.Value }}
}}
Write-ConvergeMarker 'out' (ConvertTo-Json -InputObject $__convergeOut -Depth 8 -Compress)
"""

CAPTURE_ALL_VARIABLES = r"""
$__convergeOut = @{}
Get-Variable | Where-Object {
    $__convergeBaseline -notcontains $_.Name -and -not $_.Name.StartsWith('__converge')
} | ForEach-Object { $__convergeOut[$_.Name] = $_.Value }
Write-ConvergeMarker 'out' (ConvertTo-Json -InputObject $__convergeOut -Depth 8 -Compress)
"""


class PowerShellJobChannel(JobChannel):
    """Runs jobs with PowerShell on the local execution target."""

    def __init__(self, executable: Optional[str] = None, cwd: Optional[str] = None):
        self.executable = executable or _default_executable()
        self.cwd = cwd
        self._processes: Dict[int, asyncio.subprocess.Process] = {}

    @property
    def name(self) -> str:
        return f"powershell ({self.executable})"

    def build_wrapper(self, job: Job) -> str:
        """Render the wrapper script that hosts ``job``."""
        preferences = []
        if job.verbose_logging:
            preferences.append("$VerbosePreference = 'Continue'")
        if job.debug_logging:
            preferences.append("$DebugPreference = 'Continue'")

        capture = ""
        if job.collect_output:
            if job.captures_all:
                capture = CAPTURE_ALL_VARIABLES
            else:
                names = ", ".join(_ps_quote(n) for n in job.requested_outputs())
                capture = CAPTURE_NAMED.format(names=names)

        return WRAPPER_TEMPLATE.format(preferences="\n".join(preferences), capture=capture)

    async def _execute(self, job: Job, emitter: JobEmitter) -> JobResult:
        try:
            return await self._run_process(job, emitter)
        except OSError as e:
            raise ExecutionFailed(f"could not run job '{job.label}' with {self.executable}: {e}")

    async def _run_process(self, job: Job, emitter: JobEmitter) -> JobResult:
        with tempfile.TemporaryDirectory(prefix="converge-job-") as tmp:
            script_path = Path(tmp) / "job.ps1"
            wrapper_path = Path(tmp) / "wrapper.ps1"
            script_path.write_text(job.script_text, encoding="utf-8-sig")
            wrapper_path.write_text(self.build_wrapper(job), encoding="utf-8-sig")

            env = os.environ.copy()
            env["CONVERGE_JOB_SCRIPT"] = str(script_path)
            env["CONVERGE_JOB_VARIABLES"] = json.dumps(job.variables, default=str)

            try:
                process = await asyncio.create_subprocess_exec(
                    self.executable,
                    "-NoProfile",
                    "-NonInteractive",
                    "-ExecutionPolicy",
                    "Bypass",
                    "-File",
                    str(wrapper_path),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=self.cwd,
                    env=env,
                )
            except OSError as e:
                raise ExecutionFailed(f"could not start {self.executable}: {e}")

            self._processes[id(job)] = process
            state = _StreamState()
            try:
                await asyncio.gather(
                    self._read_stdout(process.stdout, job, emitter, state),
                    self._read_stderr(process.stderr, emitter),
                )
                returncode = await process.wait()
            except (asyncio.CancelledError, ExecutionFailed):
                _terminate(process)
                raise
            finally:
                self._processes.pop(id(job), None)

        if returncode != 0:
            return JobResult(status=JobStatus.FAILED, exit_code=state.exit_code or returncode)

        return JobResult(
            status=JobStatus.SUCCEEDED,
            exit_code=state.exit_code,
            out_variables=state.out_variables,
        )

    async def _request_cancel(self, job: Job) -> None:
        process = self._processes.pop(id(job), None)
        if process is not None:
            _terminate(process)

    async def _read_stdout(
        self,
        stream: Optional[asyncio.StreamReader],
        job: Job,
        emitter: JobEmitter,
        state: "_StreamState",
    ) -> None:
        if stream is None:
            return
        async for raw in stream:
            line = _normalize_output(raw).rstrip("\r\n")
            if not line.startswith(MARKER):
                if job.log_output and line.strip():
                    emitter.log(LogLevel.INFORMATION, line)
                continue

            kind, _, payload = line[len(MARKER):].partition("]")
            if kind.startswith("log:"):
                emitter.log(LogLevel.parse(kind[4:]), payload)
            elif kind == "progress":
                _emit_progress(emitter, payload)
            elif kind == "out":
                state.out_variables = _parse_out(payload)
            elif kind == "exit":
                try:
                    state.exit_code = int(payload)
                except ValueError:
                    logger.debug(f"Ignoring malformed exit marker: {payload}")

    async def _read_stderr(self, stream: Optional[asyncio.StreamReader], emitter: JobEmitter) -> None:
        if stream is None:
            return
        async for raw in stream:
            line = _normalize_output(raw).rstrip("\r\n")
            if line.strip():
                emitter.log(LogLevel.ERROR, line)


class _StreamState:
    def __init__(self) -> None:
        self.exit_code: Optional[int] = None
        self.out_variables: Dict[str, object] = {}


def _emit_progress(emitter: JobEmitter, payload: str) -> None:
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug(f"Ignoring malformed progress marker: {payload}")
        return
    percent = data.get("percent")
    if percent is not None and percent < 0:
        percent = None
    emitter.progress(percent_complete=percent, activity=data.get("activity") or None)


def _parse_out(payload: str) -> Dict[str, object]:
    try:
        data = json.loads(payload) if payload.strip() else {}
    except json.JSONDecodeError as e:
        raise ExecutionFailed(f"job produced unreadable output variables: {e}")
    if not isinstance(data, dict):
        raise ExecutionFailed("job output variables must serialize to a mapping")
    return data


def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.terminate()
        except ProcessLookupError:
            pass


def _ps_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _default_executable() -> str:
    if shutil.which("pwsh"):
        return "pwsh"
    return "powershell.exe"


def _normalize_output(payload: bytes) -> str:
    for encoding in ("utf-8", "utf-8-sig", locale.getpreferredencoding(False), "cp1252"):
        try:
            return payload.decode(encoding)
        except (LookupError, UnicodeDecodeError):
            continue
    return payload.decode("utf-8", errors="replace")
