"""
Script Runner - executes generated automation scripts in a PowerShell subprocess
"""

import codecs
import os
import subprocess
import tempfile
import threading
from dataclasses import dataclass
from typing import Optional, Sequence

from conversion_errors import ScriptExecutionError

# COM automation prefers Windows PowerShell 5.1, then PowerShell 7.
INTERPRETER_CANDIDATES = ("powershell", "pwsh")
LIVENESS_TIMEOUT_SECONDS = 5

_NO_WINDOW = getattr(subprocess, "CREATE_NO_WINDOW", 0)

_resolve_lock = threading.Lock()
_resolved = False
_resolved_interpreter: Optional[str] = None


@dataclass(frozen=True)
class ScriptResult:
    exit_code: int
    stdout: str
    stderr: str


def probe_interpreter(candidate: str, timeout: float = LIVENESS_TIMEOUT_SECONDS) -> bool:
    """Return True when ``candidate`` starts and reports its version in time."""
    try:
        completed = subprocess.run(
            [candidate, "-NoLogo", "-NoProfile", "-NonInteractive", "-Command", "$PSVersionTable.PSVersion"],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=timeout,
            creationflags=_NO_WINDOW,
        )
    except (OSError, subprocess.SubprocessError):
        return False
    return completed.returncode == 0


def resolve_interpreter(candidates: Sequence[str] = INTERPRETER_CANDIDATES) -> Optional[str]:
    for candidate in candidates:
        if probe_interpreter(candidate):
            return candidate
    return None


def default_interpreter() -> Optional[str]:
    """
    Resolve the interpreter once per process.
    A miss is permanent: there is no periodic re-probe.
    """
    global _resolved, _resolved_interpreter
    with _resolve_lock:
        if not _resolved:
            _resolved_interpreter = resolve_interpreter()
            _resolved = True
        return _resolved_interpreter


def _decode(data: Optional[bytes]) -> str:
    if not data:
        return ""
    return data.decode("utf-8", errors="replace")


class ScriptRunner:
    """Runs one script per call: fresh BOM-encoded temp file, STA interpreter, hard timeout."""

    def __init__(self, executable: Optional[str] = None, script_suffix: str = ".ps1"):
        self.executable = executable
        self.script_suffix = script_suffix

    @classmethod
    def from_environment(cls) -> "ScriptRunner":
        return cls(default_interpreter())

    def build_command(self, script_path: str):
        return [
            self.executable,
            "-NoLogo",
            "-NoProfile",
            "-NonInteractive",
            "-ExecutionPolicy",
            "Bypass",
            "-STA",
            "-File",
            script_path,
        ]

    def run_script(self, script: str, timeout: float) -> ScriptResult:
        """
        Execute ``script`` and wait up to ``timeout`` seconds.

        Returns:
            ScriptResult for a zero exit code

        Raises:
            ScriptExecutionError carrying the (exit_code, stdout, stderr) triple
        """
        if not self.executable:
            message = "No PowerShell interpreter detected"
            raise ScriptExecutionError("interpreter_not_found", message, ScriptResult(-1, "", message))

        fd, script_path = tempfile.mkstemp(prefix="doc-merge-com-", suffix=self.script_suffix)
        process = None
        try:
            # Windows PowerShell decodes BOM-less scripts with the ANSI code page,
            # which mangles non-ASCII paths.
            with os.fdopen(fd, "wb") as handle:
                handle.write(codecs.BOM_UTF8)
                handle.write(script.encode("utf-8"))

            try:
                process = subprocess.Popen(
                    self.build_command(script_path),
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    creationflags=_NO_WINDOW,
                )
            except OSError as exc:
                message = f"PowerShell could not be started: {exc}"
                raise ScriptExecutionError("spawn_error", message, ScriptResult(-1, "", str(exc))) from exc

            try:
                stdout_bytes, stderr_bytes = process.communicate(timeout=timeout)
            except subprocess.TimeoutExpired as exc:
                process.kill()
                stdout_bytes, stderr_bytes = self._drain(process)
                message = f"PowerShell execution timed out after {timeout}s"
                partial_stderr = _decode(stderr_bytes)
                stderr_text = f"{partial_stderr}\n{message}" if partial_stderr else message
                raise ScriptExecutionError(
                    "timeout",
                    message,
                    ScriptResult(-1, _decode(stdout_bytes), stderr_text),
                ) from exc
            except KeyboardInterrupt as exc:
                process.kill()
                stdout_bytes, _ = self._drain(process)
                message = "PowerShell execution was interrupted"
                raise ScriptExecutionError(
                    "interrupted",
                    message,
                    ScriptResult(-1, _decode(stdout_bytes), message),
                ) from exc

            result = ScriptResult(process.returncode, _decode(stdout_bytes), _decode(stderr_bytes))
            if result.exit_code != 0:
                raise ScriptExecutionError(
                    "non_zero_exit",
                    f"PowerShell exited with code {result.exit_code}",
                    result,
                )
            return result
        finally:
            if process is not None and process.poll() is None:
                try:
                    process.kill()
                except OSError:
                    pass
            try:
                os.remove(script_path)
            except OSError:
                pass

    @staticmethod
    def _drain(process):
        """Collect whatever output a killed process left behind."""
        try:
            return process.communicate(timeout=LIVENESS_TIMEOUT_SECONDS)
        except (subprocess.TimeoutExpired, OSError, ValueError):
            return b"", b""
