"""
Document Merger Engine - Core merging logic
Merges .docx, legacy .doc, PDF and image files into one .docx, converting through Word/WPS automation
"""

import atexit
import os
import re
import shutil
import tempfile
import threading
import uuid
import zipfile
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

import olefile
from pypdf import PdfReader

from conversion_errors import (
    AssemblyIOError,
    CapabilityUnavailable,
    CountMismatch,
    DocMergeError,
    MergeCancelled,
    UnsupportedOperation,
)
from docx_assembler import DocxAssembler
from engine_selection import ConverterMode, EngineResolver
from run_logger import RunLogger

# Module-level tracking of temp dirs for atexit cleanup if process is killed.
_active_temp_dirs: Set[str] = set()
_active_temp_dirs_lock = threading.Lock()


def _atexit_cleanup_temp_dirs():
    """Last-resort cleanup of temp dirs when the process exits."""
    with _active_temp_dirs_lock:
        for d in list(_active_temp_dirs):
            shutil.rmtree(d, ignore_errors=True)
        _active_temp_dirs.clear()


atexit.register(_atexit_cleanup_temp_dirs)


LEGACY_DOC_EXTENSIONS = ('.doc',)
XML_DOC_EXTENSIONS = ('.docx',)
PDF_EXTENSIONS = ('.pdf',)
IMAGE_EXTENSIONS = ('.png', '.jpg', '.jpeg', '.bmp', '.gif', '.tif', '.tiff', '.webp')

_ILLEGAL_NAME_CHARS = re.compile(r'[\\/:*?"<>|]')


def _record_warning(warnings: Optional[List[Dict]], code: str, message: str, **context) -> None:
    """Append a structured warning when a warning collector is provided."""
    if warnings is None:
        return
    warning = {'code': code, 'message': message}
    warning.update(context)
    warnings.append(warning)


def _safe_progress(callback, *args) -> None:
    """Call a progress callback, swallowing exceptions to avoid crashing the merge."""
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        pass


def _make_writable_temp_dir(prefix: str, base_dir: Optional[str] = None) -> str:
    """
    Create a writable temporary directory.
    Some Windows/Python builds can produce temp dirs that are not writable when
    created with tempfile.mkdtemp(mode=0o700 semantics).
    """
    base_candidates = [base_dir] if base_dir else [tempfile.gettempdir(), os.getcwd()]

    for candidate_base in base_candidates:
        if not candidate_base:
            continue
        try:
            os.makedirs(candidate_base, exist_ok=True)
        except OSError:
            continue

        for _ in range(8):
            candidate = os.path.join(candidate_base, f"{prefix}{uuid.uuid4().hex}")
            try:
                os.makedirs(candidate, exist_ok=False)
                probe = os.path.join(candidate, ".write_probe")
                with open(probe, "wb") as handle:
                    handle.write(b"ok")
                os.remove(probe)
                return candidate
            except OSError:
                shutil.rmtree(candidate, ignore_errors=True)

    raise AssemblyIOError("Unable to create a writable temporary directory.")


def _remove_file_quietly(path: str) -> None:
    try:
        if os.path.exists(path):
            os.remove(path)
    except OSError:
        pass


class ItemType(Enum):
    LEGACY_DOC = "legacy_doc"
    XML_DOC = "xml_doc"
    IMAGE = "image"
    PDF = "pdf"


class ItemStatus(Enum):
    OK = "ok"
    MISSING = "missing"


def classify_path(path: str) -> Optional[ItemType]:
    """
    Classify a file by extension, correcting mislabeled Word files by content:
    a .doc that is really a zip package is XML, a .docx that is really OLE is legacy.
    """
    lower = os.fspath(path).lower()
    if lower.endswith(PDF_EXTENSIONS):
        return ItemType.PDF
    if lower.endswith(IMAGE_EXTENSIONS):
        return ItemType.IMAGE
    if lower.endswith(LEGACY_DOC_EXTENSIONS):
        if os.path.isfile(path) and zipfile.is_zipfile(path):
            return ItemType.XML_DOC
        return ItemType.LEGACY_DOC
    if lower.endswith(XML_DOC_EXTENSIONS):
        if os.path.isfile(path) and olefile.isOleFile(path):
            return ItemType.LEGACY_DOC
        return ItemType.XML_DOC
    return None


@dataclass
class SourceItem:
    """One input file as listed by the scanning/UI side; read-only to the merge."""

    path: str
    name: str
    item_type: ItemType
    checked: bool = True
    status: ItemStatus = ItemStatus.OK

    @classmethod
    def from_path(cls, path: str, checked: bool = True) -> Optional["SourceItem"]:
        path = os.fspath(path)
        item_type = classify_path(path)
        if item_type is None:
            return None
        status = ItemStatus.OK if os.path.isfile(path) else ItemStatus.MISSING
        return cls(path, os.path.basename(path), item_type, checked, status)

    @property
    def is_missing(self) -> bool:
        return self.status is ItemStatus.MISSING

    @property
    def needs_conversion(self) -> bool:
        return self.item_type in (ItemType.LEGACY_DOC, ItemType.PDF)


def default_output_name() -> str:
    return f"merged_{datetime.now().strftime('%Y%m%d_%H%M%S')}.docx"


def normalize_output_name(name: Optional[str]) -> str:
    """Blank names get a timestamped default; '.docx' is appended when missing."""
    if name is None or not name.strip():
        return default_output_name()
    name = name.strip()
    if _ILLEGAL_NAME_CHARS.search(name):
        raise ValueError('Output file name contains illegal characters: \\ / : * ? " < > |')
    if not name.lower().endswith('.docx'):
        name = name + '.docx'
    return name


def _pdf_page_count(pdf_path: str) -> Optional[int]:
    try:
        return len(PdfReader(pdf_path).pages)
    except Exception:
        return None


class ConversionPipeline:
    """Coordinates conversion and assembly for one merge run"""

    def __init__(
        self,
        resolver: EngineResolver,
        logger: Optional[RunLogger] = None,
        page_size=None,
        margins=None,
        temp_root: Optional[str] = None,
        temp_prefix: str = "doc_merge_",
    ):
        self.resolver = resolver
        self.logger = logger or RunLogger()
        self.page_size = page_size
        self.margins = margins
        self.temp_root = temp_root
        self.temp_prefix = temp_prefix

    def merge(
        self,
        items: Sequence[SourceItem],
        output_dir: str,
        output_name: Optional[str] = None,
        mode: ConverterMode = ConverterMode.AUTO,
        progress_callback: Optional[Callable[[int, int, str], None]] = None,
        is_cancelled: Optional[Callable[[], bool]] = None,
        overwrite: bool = True,
    ) -> Dict[str, Any]:
        """
        Merge the checked, present items into one .docx, in list order.

        Args:
            items: SourceItems in merge order
            output_dir: Directory receiving the merged file
            output_name: File name; '.docx' is appended, blank means a timestamped default
            mode: Which conversion engine may be used
            progress_callback: Optional callback function(current, total, label)
            is_cancelled: Optional predicate polled at every item boundary

        Returns:
            Dict with merge statistics
        """
        is_cancelled = is_cancelled or (lambda: False)
        warnings: List[Dict] = []
        selected = self._select_items(items, warnings)
        if not selected:
            raise DocMergeError("No files selected for merging")

        file_name = normalize_output_name(output_name)
        os.makedirs(output_dir, exist_ok=True)
        output_file = os.path.join(output_dir, file_name)
        temp_output = output_file + ".tmp"
        if not overwrite and os.path.exists(output_file):
            raise FileExistsError(f"Output file already exists: {output_file}")
        _remove_file_quietly(temp_output)

        legacy_positions = [i for i, item in enumerate(selected) if item.item_type is ItemType.LEGACY_DOC]
        pdf_positions = [i for i, item in enumerate(selected) if item.item_type is ItemType.PDF]

        engine = None
        if legacy_positions or pdf_positions:
            engine = self._resolve_engine(mode, selected, pdf_positions)

        summary: Dict[str, Any] = {
            'output_file': output_file,
            'mode': mode.value,
            'engine': engine.engine_name if engine else None,
            'items_total': len(items),
            'items_merged': 0,
            'legacy_converted': 0,
            'pdf_converted': 0,
            'documents_embedded': 0,
            'images_embedded': 0,
            'page_breaks': 0,
        }

        print(f"\nMerging {len(selected)} file(s) into {file_name}")
        self.logger.info(
            "Merge started",
            event="merge_start",
            output=output_file,
            count=len(selected),
            mode=mode.value,
            engine=summary['engine'],
        )

        temp_dir = None
        try:
            if engine is not None:
                temp_dir = _make_writable_temp_dir(self.temp_prefix, self.temp_root)
                with _active_temp_dirs_lock:
                    _active_temp_dirs.add(temp_dir)

            converted: Dict[int, str] = {}
            if legacy_positions:
                self._check_cancelled(is_cancelled, selected[legacy_positions[0]])
                converted = self._convert_legacy(engine, selected, legacy_positions, temp_dir)
                summary['legacy_converted'] = len(converted)

            assembler = DocxAssembler(page_size=self.page_size, margins=self.margins)
            total = len(selected)
            for position, item in enumerate(selected):
                self._check_cancelled(is_cancelled, item)
                self._append_item(assembler, item, position, converted, engine, temp_dir, summary)
                if position < total - 1:
                    assembler.append_page_break()
                summary['items_merged'] += 1
                _safe_progress(progress_callback, position + 1, total, item.name)

            self._check_cancelled(is_cancelled, None)
            self._commit(assembler, temp_output, output_file)
            summary['page_breaks'] = assembler.page_breaks
        except MergeCancelled as exc:
            self.logger.warn(f"Merge cancelled: {exc}", event="merge_cancelled", output=output_file)
            raise
        except Exception as exc:
            self.logger.error("Merge failed", cause=exc, event="merge_failed", output=output_file)
            raise
        finally:
            _remove_file_quietly(temp_output)
            if temp_dir:
                shutil.rmtree(temp_dir, ignore_errors=True)
                with _active_temp_dirs_lock:
                    _active_temp_dirs.discard(temp_dir)

        if warnings:
            summary['warnings'] = warnings
        print(f"    Created: {file_name} ({summary['items_merged']} files)")
        self.logger.info(f"Merge complete, output file: {output_file}", event="merge_complete", output=output_file)
        return summary

    def _select_items(self, items: Sequence[SourceItem], warnings: List[Dict]) -> List[SourceItem]:
        selected = []
        for item in items:
            if item.is_missing:
                message = f"File is missing, skipped: {item.path}"
                _record_warning(warnings, 'item_missing', message, file=item.path)
                self.logger.warn(message, event="item_missing", file=item.path)
                continue
            if item.checked:
                selected.append(item)
        return selected

    def _resolve_engine(self, mode: ConverterMode, selected: List[SourceItem], pdf_positions: List[int]):
        try:
            selection = self.resolver.require_selection(mode)
        except CapabilityUnavailable as exc:
            self.logger.error("No document conversion engine available", cause=exc, event="engine_unavailable")
            raise

        engine = selection.engine
        if pdf_positions and not engine.supports_pdf:
            first_pdf = selected[pdf_positions[0]]
            message = f"{engine.engine_name} cannot convert PDF files; remove {first_pdf.name} or use another engine"
            exc = UnsupportedOperation(message, failed_input=first_pdf.path, stderr=message)
            self.logger.error("PDF conversion not supported", cause=exc, event="pdf_unsupported")
            raise exc
        self.logger.info(f"Using {engine.engine_name} for conversion", event="engine_selected", mode=mode.value)
        return engine

    def _convert_legacy(self, engine, selected: List[SourceItem], positions: List[int], temp_dir: str) -> Dict[int, str]:
        """Convert every legacy document in one session; returns list position -> converted path."""
        sources = [selected[position].path for position in positions]
        print(f"  Converting {len(sources)} legacy document(s) with {engine.engine_name}...")
        batch = engine.convert_batch(sources, temp_dir)
        if len(batch.outputs) != len(sources):
            raise CountMismatch(
                f"Conversion returned {len(batch.outputs)} file(s) for {len(sources)} input(s)",
                failed_input=sources[min(len(batch.outputs), len(sources) - 1)],
            )
        self.logger.info(
            f"Converted {len(sources)} legacy document(s)",
            event="legacy_converted",
            count=len(sources),
            temp_dir=temp_dir,
        )
        return dict(zip(positions, batch.outputs))

    def _append_item(self, assembler, item, position, converted, engine, temp_dir, summary) -> None:
        try:
            if item.item_type is ItemType.XML_DOC:
                if not os.path.isfile(item.path):
                    raise AssemblyIOError(f"File is missing: {item.name}", item.path)
                if not zipfile.is_zipfile(item.path):
                    raise AssemblyIOError(f"Not a valid .docx package: {item.name}", item.path)
                assembler.append_subdocument(item.path)
                summary['documents_embedded'] += 1
            elif item.item_type is ItemType.LEGACY_DOC:
                assembler.append_subdocument(converted[position])
                summary['documents_embedded'] += 1
            elif item.item_type is ItemType.PDF:
                pages = _pdf_page_count(item.path)
                page_note = f" ({pages} pages)" if pages is not None else ""
                print(f"  Converting PDF {item.name}{page_note} with {engine.engine_name}...")
                self.logger.info("Converting PDF", event="pdf_convert_start", file=item.path, pages=pages)
                docx_path = engine.convert_pdf_to_docx(item.path, temp_dir)
                summary['pdf_converted'] += 1
                assembler.append_subdocument(docx_path)
                summary['documents_embedded'] += 1
            elif item.item_type is ItemType.IMAGE:
                assembler.append_image(item.path)
                summary['images_embedded'] += 1
            else:
                raise AssemblyIOError(f"Unsupported item type: {item.item_type}", item.path)
        except DocMergeError:
            raise
        except Exception as exc:
            raise AssemblyIOError(f"Could not append {item.name}: {exc}", item.path) from exc

    def _check_cancelled(self, is_cancelled: Callable[[], bool], next_item: Optional[SourceItem]) -> None:
        if is_cancelled():
            where = f"before {next_item.name}" if next_item is not None else "before saving"
            raise MergeCancelled(f"Merge cancelled by user {where}")

    def _commit(self, assembler: DocxAssembler, temp_output: str, output_file: str) -> None:
        """Write to '<name>.tmp' first; the real path only ever appears through an atomic rename."""
        try:
            assembler.save(temp_output)
            os.replace(temp_output, output_file)
        except OSError as exc:
            raise AssemblyIOError(f"Could not write output file {output_file}: {exc}", output_file) from exc


class MergeJob:
    """Runs one merge on a background thread so the caller stays responsive."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def __init__(
        self,
        pipeline: ConversionPipeline,
        items: Sequence[SourceItem],
        output_dir: str,
        output_name: Optional[str] = None,
        mode: ConverterMode = ConverterMode.AUTO,
        progress_callback=None,
        done_callback: Optional[Callable[["MergeJob"], None]] = None,
        overwrite: bool = True,
    ):
        self.pipeline = pipeline
        self.items = list(items)
        self.output_dir = output_dir
        self.output_name = output_name
        self.mode = mode
        self.progress_callback = progress_callback
        self.done_callback = done_callback
        self.overwrite = overwrite
        self.cancel_event = threading.Event()
        self.outcome: Optional[str] = None
        self.result: Optional[Dict[str, Any]] = None
        self.error: Optional[BaseException] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "MergeJob":
        if self._thread is not None:
            raise RuntimeError("Merge job already started")
        self._thread = threading.Thread(target=self._run, name="merge-worker", daemon=True)
        self._thread.start()
        return self

    def _run(self) -> None:
        try:
            self.result = self.pipeline.merge(
                self.items,
                self.output_dir,
                output_name=self.output_name,
                mode=self.mode,
                progress_callback=self.progress_callback,
                is_cancelled=self.cancel_event.is_set,
                overwrite=self.overwrite,
            )
            self.outcome = self.SUCCEEDED
        except MergeCancelled as exc:
            self.error = exc
            self.outcome = self.CANCELLED
        except Exception as exc:
            self.error = exc
            self.outcome = self.FAILED
        finally:
            _safe_progress(self.done_callback, self)

    def cancel(self) -> None:
        self.cancel_event.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the worker; returns True once it has finished."""
        if self._thread is None:
            return False
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
