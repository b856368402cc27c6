from pathlib import Path
import os
import re
import shutil
import tempfile
import threading
import time
import uuid

import pytest
from docx import Document
from PIL import Image
from pypdf import PdfWriter

from com_engines import MS_WORD, WPS_WRITER, AutomationLockCoordinator, ConversionEngine
from conversion_errors import ScriptExecutionError
from engine_selection import EngineResolver, EngineSelector
from script_runner import ScriptResult

_QUOTED = r"'((?:[^']|'')*)'"
_ITEM_RE = re.compile(r"@\{ index = (\d+); input = " + _QUOTED + r"; output = " + _QUOTED + r" \}")
_PDF_INPUT_RE = re.compile(r"^\$inputPath = " + _QUOTED, re.MULTILINE)
_PDF_OUTPUT_RE = re.compile(r"^\$outputPath = " + _QUOTED, re.MULTILINE)
_PROG_ID_RE = re.compile(r"New-Object -ComObject " + _QUOTED)


def _unquote(value: str) -> str:
    return value.replace("''", "'")


@pytest.fixture
def tmp_path():
    """
    Local override for pytest's tmp_path fixture.
    Some Windows environments create tmp roots with restrictive ACLs that
    break test setup/teardown. This keeps temp dirs under LOCALAPPDATA/Temp.
    """
    base_root = Path(os.environ.get("LOCALAPPDATA", tempfile.gettempdir()))
    base = base_root / "Temp" / "docmerge_pytest_cases"
    base.mkdir(parents=True, exist_ok=True)
    path = base / f"case_{uuid.uuid4().hex}"
    path.mkdir(parents=True, exist_ok=False)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def make_pdf(tmp_path: Path):
    def _make(filename: str, pages: int = 1) -> Path:
        path = tmp_path / filename
        writer = PdfWriter()
        for _ in range(pages):
            writer.add_blank_page(width=72, height=72)
        with path.open("wb") as handle:
            writer.write(handle)
        return path

    return _make


@pytest.fixture
def make_docx(tmp_path: Path):
    def _make(filename: str, text: str) -> Path:
        path = tmp_path / filename
        document = Document()
        document.add_paragraph(text)
        document.save(path)
        return path

    return _make


@pytest.fixture
def make_image(tmp_path: Path):
    def _make(filename: str, size=(40, 20), color=(200, 30, 30), dpi=None) -> Path:
        path = tmp_path / filename
        image = Image.new("RGB", size, color)
        if dpi:
            image.save(path, dpi=dpi)
        else:
            image.save(path)
        return path

    return _make


@pytest.fixture
def make_legacy_doc(tmp_path: Path):
    def _make(filename: str) -> Path:
        path = tmp_path / filename
        # OLE compound file signature followed by filler; only the engine reads it.
        path.write_bytes(b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1" + b"\x00" * 1528)
        return path

    return _make


class FakeScriptRunner:
    """
    Stands in for PowerShell: reads the item list back out of the generated
    script and behaves like the real script would (outputs, markers, failures).
    """

    def __init__(
        self,
        executable="powershell",
        unavailable=(),
        fail_at=None,
        timeout_at=None,
        skip_outputs=(),
        omit_markers=(),
        fail_pdf=False,
        delay=0.0,
    ):
        self.executable = executable
        self.unavailable = set(unavailable)
        self.fail_at = fail_at
        self.timeout_at = timeout_at
        self.skip_outputs = set(skip_outputs)
        self.omit_markers = set(omit_markers)
        self.fail_pdf = fail_pdf
        self.delay = delay
        self.calls = []
        self.windows = []
        self._lock = threading.Lock()

    def count(self, kind: str) -> int:
        return sum(1 for call_kind, _, _ in self.calls if call_kind == kind)

    def run_script(self, script: str, timeout: float) -> ScriptResult:
        if "$items = @(" in script:
            kind = "batch"
        elif "$outputPath = '" in script:
            kind = "pdf"
        else:
            kind = "probe"
        with self._lock:
            self.calls.append((kind, script, timeout))

        start = time.monotonic()
        try:
            if self.delay:
                time.sleep(self.delay)
            if kind == "probe":
                return self._probe(script)
            if kind == "batch":
                return self._batch(script)
            return self._pdf(script)
        finally:
            with self._lock:
                self.windows.append((start, time.monotonic()))

    def _probe(self, script: str) -> ScriptResult:
        prog_id = _unquote(_PROG_ID_RE.search(script).group(1))
        if prog_id in self.unavailable:
            raise ScriptExecutionError(
                "non_zero_exit",
                "PowerShell exited with code 1",
                ScriptResult(1, "", "[COM_PROBE_ERROR] Class not registered"),
            )
        return ScriptResult(0, f"[PROBE_OK] {prog_id}\n", "")

    def _batch(self, script: str) -> ScriptResult:
        stdout = []
        for index, input_path, output_path in _ITEM_RE.findall(script):
            index = int(index)
            if self.fail_at == index:
                raise ScriptExecutionError(
                    "non_zero_exit",
                    "PowerShell exited with code 1",
                    ScriptResult(1, "".join(stdout), f"[FAILED_ITEM] {index}\n[DOC_TO_DOCX_ERROR] boom\n"),
                )
            if self.timeout_at == index:
                raise ScriptExecutionError(
                    "timeout",
                    "PowerShell execution timed out",
                    ScriptResult(-1, "".join(stdout), "PowerShell execution timed out"),
                )
            if index not in self.skip_outputs:
                _write_converted(_unquote(output_path), _unquote(input_path))
            if index not in self.omit_markers:
                stdout.append(f"[CONVERTED] {index}\n")
        return ScriptResult(0, "".join(stdout), "")

    def _pdf(self, script: str) -> ScriptResult:
        input_path = _unquote(_PDF_INPUT_RE.search(script).group(1))
        output_path = _unquote(_PDF_OUTPUT_RE.search(script).group(1))
        if self.fail_pdf:
            raise ScriptExecutionError(
                "non_zero_exit",
                "PowerShell exited with code 1",
                ScriptResult(1, "", "[FAILED_ITEM] 1\n[PDF_TO_DOCX_ERROR] reflow failed\n"),
            )
        _write_converted(output_path, input_path)
        return ScriptResult(0, "[CONVERTED] 1\n", "")


def _write_converted(output_path: str, input_path: str) -> None:
    document = Document()
    document.add_paragraph(f"Converted from {os.path.basename(input_path)}")
    document.save(output_path)


@pytest.fixture
def fake_runner():
    def _make(**kwargs) -> FakeScriptRunner:
        return FakeScriptRunner(**kwargs)

    return _make


@pytest.fixture
def make_engines():
    def _make(runner, coordinator=None):
        coordinator = coordinator or AutomationLockCoordinator()
        word = ConversionEngine(MS_WORD, runner, coordinator, os_name="nt")
        wps = ConversionEngine(WPS_WRITER, runner, coordinator, os_name="nt")
        return word, wps

    return _make


@pytest.fixture
def make_resolver(make_engines):
    def _make(runner, coordinator=None, clock=None):
        word, wps = make_engines(runner, coordinator)
        if clock is None:
            selector = EngineSelector(word, wps)
        else:
            selector = EngineSelector(word, wps, clock=clock)
        return EngineResolver(selector)

    return _make
