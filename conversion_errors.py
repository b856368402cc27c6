"""
Error types raised by the conversion engines and the merge pipeline.
Every engine-level error keeps the captured diagnostics so callers can log them verbatim.
"""

from typing import Optional


class DocMergeError(Exception):
    """Base class for all document merge errors."""


class CapabilityUnavailable(DocMergeError):
    """No usable automation product, interpreter, or host OS for the requested work."""

    def __init__(self, message: str, probe=None):
        super().__init__(message)
        self.probe = probe


class ScriptExecutionError(DocMergeError):
    """An automation script could not be run to a zero exit code.

    ``kind`` is one of ``interpreter_not_found``, ``timeout``, ``non_zero_exit``,
    ``spawn_error`` or ``interrupted``.
    """

    def __init__(self, kind: str, message: str, result):
        super().__init__(message)
        self.kind = kind
        self.result = result

    @property
    def exit_code(self) -> int:
        return self.result.exit_code

    @property
    def stdout(self) -> str:
        return self.result.stdout

    @property
    def stderr(self) -> str:
        return self.result.stderr


class ConversionError(DocMergeError):
    """A conversion step failed; carries the failing input and captured process output."""

    def __init__(
        self,
        message: str,
        failed_input: Optional[str] = None,
        stdout: str = "",
        stderr: str = "",
        exit_code: int = -1,
    ):
        super().__init__(message)
        self.failed_input = failed_input or ""
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        self.exit_code = exit_code

    def diagnostics(self) -> dict:
        return {
            "failed_input": self.failed_input,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }


class ExecutionTimeout(ConversionError):
    pass


class ExecutionFailed(ConversionError):
    pass


class OutputMissing(ConversionError):
    pass


class CountMismatch(ConversionError):
    pass


class UnsupportedOperation(ConversionError):
    """The selected engine lacks the capability (e.g. PDF reflow)."""


class MergeCancelled(DocMergeError):
    """The run was stopped by its cancellation predicate."""


class AssemblyIOError(DocMergeError):
    """Reading a source item or writing the output package failed."""

    def __init__(self, message: str, item_path: str = ""):
        super().__init__(message)
        self.item_path = item_path
