"""
COM conversion engines - drive Word or WPS through generated PowerShell scripts
to turn legacy .doc files (and, for Word, PDFs) into .docx.
"""

import os
import re
import string
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from conversion_errors import (
    CapabilityUnavailable,
    CountMismatch,
    ExecutionFailed,
    ExecutionTimeout,
    OutputMissing,
    ScriptExecutionError,
    UnsupportedOperation,
)


@dataclass(frozen=True)
class EngineDescriptor:
    """Capability descriptor for one office automation product."""

    key: str
    display_name: str
    prog_id: str  # COM ProgID
    format_priority: Tuple[int, int]  # SaveAs format codes, tried in order
    supports_pdf: bool


MS_WORD = EngineDescriptor(
    key="word",
    display_name="Microsoft Word",
    prog_id="Word.Application",
    format_priority=(16, 12),  # wdFormatDocumentDefault, wdFormatXMLDocument
    supports_pdf=True,
)

WPS_WRITER = EngineDescriptor(
    key="wps",
    display_name="WPS Writer",
    prog_id="kwps.Application",
    format_priority=(12, 16),
    supports_pdf=False,
)


@dataclass(frozen=True)
class ProbeResult:
    engine_name: str
    available: bool
    message: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int = -1

    @classmethod
    def unavailable(cls, engine_name: str, message: str) -> "ProbeResult":
        return cls(engine_name, False, message, "", message, -1)


@dataclass
class ConversionBatch:
    """Converted outputs for one batch call, 1:1 and in the same order as ``inputs``."""

    inputs: List[str]
    outputs: List[str]
    temp_dir: Optional[str] = None
    engine_name: str = ""


class AutomationLockCoordinator:
    """
    Admits exactly one automation session at a time, first come first served.

    Office automation servers are not safe to drive concurrently, even across
    different products, so every engine shares one coordinator.
    """

    def __init__(self):
        self._condition = threading.Condition()
        self._next_ticket = 0
        self._serving = 0
        self._abandoned = set()
        self._held = False

    def acquire(self) -> None:
        with self._condition:
            ticket = self._next_ticket
            self._next_ticket += 1
            try:
                while ticket != self._serving or self._held:
                    self._condition.wait()
            except BaseException:
                if ticket == self._serving and not self._held:
                    self._advance()
                else:
                    self._abandoned.add(ticket)
                raise
            self._held = True

    def release(self) -> None:
        with self._condition:
            if not self._held:
                raise RuntimeError("Automation lock released without being held")
            self._held = False
            self._advance()

    def _advance(self) -> None:
        self._serving += 1
        while self._serving in self._abandoned:
            self._abandoned.discard(self._serving)
            self._serving += 1
        self._condition.notify_all()

    @property
    def locked(self) -> bool:
        with self._condition:
            return self._held

    @contextmanager
    def session(self):
        self.acquire()
        try:
            yield self
        finally:
            self.release()


_default_coordinator = AutomationLockCoordinator()


def default_coordinator() -> AutomationLockCoordinator:
    """The process-wide coordinator shared by the default engines."""
    return _default_coordinator


class _ScriptTemplate(string.Template):
    # '$' belongs to PowerShell.
    delimiter = "@@"


_PRELUDE = """\
$ErrorActionPreference = 'Stop'
[Console]::OutputEncoding = [System.Text.Encoding]::UTF8
$OutputEncoding = [System.Text.Encoding]::UTF8
function _err([string]$m) { try { [Console]::Error.WriteLine($m) } catch { } }
function _out([string]$m) { try { [Console]::Out.WriteLine($m) } catch { } }
"""

# Never Write-Error or rethrow in the handler: under 'Stop' that raises again
# and the process exit code is lost.
_ERROR_HANDLER = """\
} catch {
@@item_line
  _err ('@@tag ' + $_.Exception.ToString())
  try { _err ('[ErrorRecord] ' + ($_ | Format-List -Force * | Out-String)) } catch { }
  exit 1
}
"""

_QUIET_APP = """\
    try { $app.Visible = $false } catch { }
    try { $app.DisplayAlerts = 0 } catch { }
    try { $app.AutomationSecurity = 3 } catch { }
    try { $app.Options.ConfirmConversions = $false } catch { }
"""

_VISIBLE_APP = """\
    try { $app.Visible = $true } catch { }
    try { $app.DisplayAlerts = 0 } catch { }
    try { $app.AutomationSecurity = 3 } catch { }
    try { $app.Options.ConfirmConversions = $false } catch { }
"""

_OPEN_CHAIN = """\
        try {
          $doc = $app.Documents.Open($inputPath, $false, $true, $false)
        } catch {
          $doc = $null
        }
        if ($doc -eq $null) {
          try {
            $pv = $app.ProtectedViewWindows.Open($inputPath)
            $doc = $pv.Edit()
          } catch {
            $doc = $null
          }
        }
        if ($doc -eq $null) {
          $doc = $app.Documents.Open($inputPath)
        }
"""

_SAVE_CHAIN = """\
        $saved = $false
        foreach ($fmt in $fmts) {
          if ($saved) { break }
          try { $doc.SaveAs2($outputPath, [int]$fmt); $saved = $true } catch { }
          if (-not $saved) { try { $doc.SaveAs($outputPath, [int]$fmt); $saved = $true } catch { } }
        }
        if (-not $saved) { try { $doc.SaveAs($outputPath); $saved = $true } catch { } }
        if (-not $saved) { throw ('Save failed: ' + $outputPath) }
"""

_PDF_SAVE_CHAIN = """\
        $saved = $false
        foreach ($fmt in $fmts) {
          if ($saved) { break }
          for ($i = 1; $i -le 3; $i++) {
            try {
              $doc.SaveAs2($outputPath, [int]$fmt)
              $saved = $true
              break
            } catch {
              Start-Sleep -Seconds (2 * $i)
            }
          }
          if (-not $saved) { try { $doc.SaveAs($outputPath, [int]$fmt); $saved = $true } catch { } }
        }
        if (-not $saved) { try { $doc.SaveAs($outputPath); $saved = $true } catch { } }
        if (-not $saved) { throw ('Save failed after SaveAs2/SaveAs retries: ' + $outputPath) }
"""

_CLOSE_DOCUMENT = """\
        if ($doc -ne $null) {
          try { $doc.Close($false) | Out-Null } catch { }
          try { [System.Runtime.Interopservices.Marshal]::FinalReleaseComObject($doc) | Out-Null } catch { }
          $doc = $null
        }
        if ($pv -ne $null) {
          try { $pv.Close() | Out-Null } catch { }
          try { [System.Runtime.Interopservices.Marshal]::FinalReleaseComObject($pv) | Out-Null } catch { }
          $pv = $null
        }
"""

_QUIT_APP = """\
    if ($app -ne $null) {
      try { $app.Quit() | Out-Null } catch { }
      try { [System.Runtime.Interopservices.Marshal]::FinalReleaseComObject($app) | Out-Null } catch { }
      $app = $null
    }
    try { [GC]::Collect() } catch { }
    try { [GC]::WaitForPendingFinalizers() } catch { }
"""

_PROBE_TEMPLATE = """\
@@prelude
$app = $null
try {
  $app = New-Object -ComObject @@prog_id
  try {
    try { $app.Visible = $false } catch { }
    try { $app.DisplayAlerts = 0 } catch { }
  } finally {
@@quit_app
  }
  _out ('[PROBE_OK] ' + @@prog_id)
  exit 0
@@error_handler"""

_BATCH_TEMPLATE = """\
@@prelude
$fmts = @@formats
$items = @(
@@items
)
$current = 0
$app = $null
try {
  $app = New-Object -ComObject @@prog_id
  try {
@@quiet_app
    foreach ($item in $items) {
      $current = $item.index
      $inputPath = $item.input
      $outputPath = $item.output
      $doc = $null
      $pv = $null
      try {
        if (Test-Path -LiteralPath $outputPath) { Remove-Item -LiteralPath $outputPath -Force }
@@open_chain
        if ($doc -eq $null) { throw ('Could not open document: ' + $inputPath) }
@@save_chain
      } finally {
@@close_document
      }
      _out ('[CONVERTED] ' + $current)
    }
  } finally {
@@quit_app
  }
  exit 0
@@error_handler"""

_PDF_TEMPLATE = """\
@@prelude
$fmts = @@formats
$inputPath = @@input_path
$outputPath = @@output_path
$current = 1
$app = $null
$doc = $null
$pv = $null
try {
  if (Test-Path -LiteralPath $outputPath) { Remove-Item -LiteralPath $outputPath -Force }
  $app = New-Object -ComObject @@prog_id
  try {
@@visible_app
    try {
@@open_chain
        if ($doc -eq $null) { try { $doc = $app.ActiveDocument } catch { } }
        if ($doc -eq $null) { throw ('Could not open PDF: ' + $inputPath) }
        try { $doc.Activate() | Out-Null } catch { }
        Start-Sleep -Milliseconds 800
        try { $doc.Repaginate() | Out-Null } catch { }
@@save_chain
    } finally {
@@close_document
    }
  } finally {
@@quit_app
  }
  _out ('[CONVERTED] ' + $current)
  exit 0
@@error_handler"""

# PowerShell accepts typographic single quotes as string delimiters too.
_PS_QUOTE_CHARS = ("'", "‘", "’", "‚", "‛")


class PowerShellScriptBuilder:
    """
    Renders automation scripts from typed values.
    ``literal`` is the only place values are escaped into script text.
    """

    @staticmethod
    def quote(value) -> str:
        text = os.fspath(value) if isinstance(value, os.PathLike) else str(value)
        for char in _PS_QUOTE_CHARS:
            text = text.replace(char, char * 2)
        return "'" + text + "'"

    @classmethod
    def literal(cls, value) -> str:
        if isinstance(value, bool):
            return "$true" if value else "$false"
        if isinstance(value, int):
            return str(int(value))
        if isinstance(value, (str, os.PathLike)):
            return cls.quote(value)
        if isinstance(value, (list, tuple)):
            return "@(" + ", ".join(cls.literal(item) for item in value) + ")"
        raise TypeError(f"Unsupported script value: {value!r}")

    def _render(self, template: str, fragments: dict, **values) -> str:
        mapping = {
            "prelude": _PRELUDE.rstrip("\n"),
            "quit_app": _QUIT_APP.rstrip("\n"),
        }
        mapping.update({key: text.rstrip("\n") for key, text in fragments.items()})
        for key, value in values.items():
            mapping[key] = self.literal(value)
        return _ScriptTemplate(template).substitute(mapping)

    def _error_handler(self, tag: str, report_item: bool = True) -> str:
        item_line = "  _err ('[FAILED_ITEM] ' + $current)" if report_item else "  # probe: no items"
        return _ScriptTemplate(_ERROR_HANDLER).substitute(tag=tag, item_line=item_line)

    def probe_script(self, descriptor: EngineDescriptor) -> str:
        return self._render(
            _PROBE_TEMPLATE,
            {"error_handler": self._error_handler("[COM_PROBE_ERROR]", report_item=False)},
            prog_id=descriptor.prog_id,
        )

    def batch_script(self, descriptor: EngineDescriptor, pairs: Sequence[Tuple[str, str]]) -> str:
        rows = []
        for index, (input_path, output_path) in enumerate(pairs, 1):
            rows.append(
                "  @{ index = %s; input = %s; output = %s }"
                % (self.literal(index), self.literal(input_path), self.literal(output_path))
            )
        return self._render(
            _BATCH_TEMPLATE,
            {
                "items": ",\n".join(rows),
                "quiet_app": _QUIET_APP,
                "open_chain": _OPEN_CHAIN,
                "save_chain": _SAVE_CHAIN,
                "close_document": _CLOSE_DOCUMENT,
                "error_handler": self._error_handler("[DOC_TO_DOCX_ERROR]"),
            },
            formats=list(descriptor.format_priority),
            prog_id=descriptor.prog_id,
        )

    def pdf_script(self, descriptor: EngineDescriptor, input_path: str, output_path: str) -> str:
        return self._render(
            _PDF_TEMPLATE,
            {
                "visible_app": _VISIBLE_APP,
                "open_chain": _OPEN_CHAIN,
                "save_chain": _PDF_SAVE_CHAIN,
                "close_document": _CLOSE_DOCUMENT,
                "error_handler": self._error_handler("[PDF_TO_DOCX_ERROR]"),
            },
            formats=list(descriptor.format_priority),
            prog_id=descriptor.prog_id,
            input_path=input_path,
            output_path=output_path,
        )


_CONVERTED_RE = re.compile(r"^\[CONVERTED\]\s+(\d+)\s*$", re.MULTILINE)
_FAILED_ITEM_RE = re.compile(r"^\[FAILED_ITEM\]\s+(\d+)\s*$", re.MULTILINE)


def build_output_name(index: int, source_path: str) -> str:
    """``{index:03d}_{basename}_{unique}.docx`` so batch outputs never collide."""
    base_name = os.path.splitext(os.path.basename(os.fspath(source_path)))[0]
    return f"{index:03d}_{base_name}_{uuid.uuid4().hex}.docx"


def _discard_files(paths: Sequence[str]) -> None:
    for path in paths:
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError:
            pass


class ConversionEngine:
    """One office automation product, parameterized by its EngineDescriptor."""

    def __init__(
        self,
        descriptor: EngineDescriptor,
        runner,
        coordinator: AutomationLockCoordinator,
        script_builder: Optional[PowerShellScriptBuilder] = None,
        os_name: Optional[str] = None,
        probe_timeout_seconds: float = 10,
        convert_timeout_seconds: float = 10 * 60,
        pdf_convert_timeout_seconds: float = 15 * 60,
    ):
        self.descriptor = descriptor
        self.runner = runner
        self.coordinator = coordinator
        self.script_builder = script_builder or PowerShellScriptBuilder()
        self.os_name = os_name or os.name
        self.probe_timeout_seconds = probe_timeout_seconds
        self.convert_timeout_seconds = convert_timeout_seconds
        self.pdf_convert_timeout_seconds = pdf_convert_timeout_seconds
        self._probe_lock = threading.Lock()
        self._last_probe: Optional[ProbeResult] = None

    def __repr__(self) -> str:
        return f"ConversionEngine({self.descriptor.key!r})"

    @property
    def engine_name(self) -> str:
        return self.descriptor.display_name

    @property
    def supports_pdf(self) -> bool:
        return self.descriptor.supports_pdf

    @property
    def last_probe(self) -> Optional[ProbeResult]:
        with self._probe_lock:
            return self._last_probe

    def probe(self) -> ProbeResult:
        """Instantiate the product once and release it; exit code 0 means available."""
        if self.os_name != "nt":
            result = ProbeResult.unavailable(self.engine_name, "Only supported on Windows")
        elif not getattr(self.runner, "executable", None):
            result = ProbeResult.unavailable(self.engine_name, "No PowerShell interpreter detected")
        else:
            script = self.script_builder.probe_script(self.descriptor)
            try:
                with self.coordinator.session():
                    completed = self.runner.run_script(script, self.probe_timeout_seconds)
                result = ProbeResult(
                    self.engine_name,
                    True,
                    "Available",
                    completed.stdout,
                    completed.stderr,
                    completed.exit_code,
                )
            except ScriptExecutionError as exc:
                result = ProbeResult(
                    self.engine_name,
                    False,
                    f"COM probe failed ({exc.kind})",
                    exc.stdout,
                    exc.stderr,
                    exc.exit_code,
                )
        with self._probe_lock:
            self._last_probe = result
        return result

    def is_available(self) -> bool:
        probe = self.last_probe
        if probe is None:
            probe = self.probe()
        return probe.available

    def _require_available(self, purpose: str) -> None:
        probe = self.last_probe
        if probe is None:
            probe = self.probe()
        if not probe.available:
            raise CapabilityUnavailable(
                f"{self.engine_name} cannot be used for {purpose}: {probe.message}",
                probe=probe,
            )

    def _translate(self, exc: ScriptExecutionError, failed_input: str, action: str):
        if exc.kind == "interpreter_not_found":
            return CapabilityUnavailable(f"{self.engine_name} cannot be used for {action}: {exc}")
        error_cls = ExecutionTimeout if exc.kind == "timeout" else ExecutionFailed
        return error_cls(
            f"{self.engine_name} {action} failed ({exc.kind}): {os.path.basename(failed_input)}",
            failed_input=failed_input,
            stdout=exc.stdout,
            stderr=exc.stderr,
            exit_code=exc.exit_code,
        )

    @staticmethod
    def _failed_input(inputs: Sequence[str], stdout: str, stderr: str) -> str:
        """Name the item the script was working on when it stopped."""
        match = _FAILED_ITEM_RE.search(stderr or "")
        if match:
            position = int(match.group(1))
            if 1 <= position <= len(inputs):
                return inputs[position - 1]
        done = {int(value) for value in _CONVERTED_RE.findall(stdout or "")}
        for position, path in enumerate(inputs, 1):
            if position not in done:
                return path
        return inputs[0]

    def convert_batch(self, inputs: Sequence[str], temp_dir: str) -> ConversionBatch:
        """
        Convert legacy documents to .docx in one automation session.

        Args:
            inputs: Source paths, in merge order
            temp_dir: Private directory receiving the converted files

        Returns:
            ConversionBatch with exactly one output per input, same order
        """
        inputs = [os.fspath(path) for path in inputs]
        if not inputs:
            return ConversionBatch([], [], temp_dir, self.engine_name)
        self._require_available("legacy document conversion")
        if not temp_dir:
            raise ValueError("A temporary directory is required for conversion output")
        os.makedirs(temp_dir, exist_ok=True)

        outputs = [os.path.join(temp_dir, build_output_name(index, path)) for index, path in enumerate(inputs, 1)]
        script = self.script_builder.batch_script(self.descriptor, list(zip(inputs, outputs)))

        with self.coordinator.session():
            try:
                try:
                    completed = self.runner.run_script(script, self.convert_timeout_seconds)
                except ScriptExecutionError as exc:
                    failed = self._failed_input(inputs, exc.stdout, exc.stderr)
                    raise self._translate(exc, failed, "document conversion") from exc
                self._verify_batch(inputs, outputs, completed)
            except BaseException:
                _discard_files(outputs)
                raise

        return ConversionBatch(inputs, outputs, temp_dir, self.engine_name)

    def _verify_batch(self, inputs: List[str], outputs: List[str], completed) -> None:
        reported = {int(value) for value in _CONVERTED_RE.findall(completed.stdout or "")}
        if len(reported) != len(inputs) or len(outputs) != len(inputs):
            failed = self._failed_input(inputs, completed.stdout, "")
            raise CountMismatch(
                f"{self.engine_name} reported {len(reported)} converted document(s), expected {len(inputs)}",
                failed_input=failed,
                stdout=completed.stdout,
                stderr=completed.stderr,
                exit_code=completed.exit_code,
            )
        for source, output in zip(inputs, outputs):
            if not os.path.isfile(output):
                raise OutputMissing(
                    f"Conversion produced no output file for {os.path.basename(source)}",
                    failed_input=source,
                    stdout=completed.stdout,
                    stderr=f"Missing output file: {output}",
                    exit_code=completed.exit_code,
                )

    def convert_pdf_to_docx(self, pdf_path: str, temp_dir: str) -> str:
        """Reflow one PDF into a .docx inside ``temp_dir`` and return its path."""
        pdf_path = os.fspath(pdf_path)
        if not self.supports_pdf:
            message = f"{self.engine_name} does not support PDF to DOCX conversion"
            raise UnsupportedOperation(message, failed_input=pdf_path, stderr=message)
        self._require_available("PDF conversion")
        if not temp_dir:
            raise ValueError("A temporary directory is required for conversion output")
        os.makedirs(temp_dir, exist_ok=True)

        output = os.path.join(temp_dir, build_output_name(1, pdf_path))
        script = self.script_builder.pdf_script(self.descriptor, pdf_path, output)

        with self.coordinator.session():
            try:
                try:
                    completed = self.runner.run_script(script, self.pdf_convert_timeout_seconds)
                except ScriptExecutionError as exc:
                    raise self._translate(exc, pdf_path, "PDF conversion") from exc
                if not os.path.isfile(output):
                    raise OutputMissing(
                        f"PDF conversion produced no output file for {os.path.basename(pdf_path)}",
                        failed_input=pdf_path,
                        stdout=completed.stdout,
                        stderr=f"Missing output file: {output}",
                        exit_code=completed.exit_code,
                    )
            except BaseException:
                _discard_files([output])
                raise
        return output
