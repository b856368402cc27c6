"""
Run logger - persists merge events to text and JSONL logs and forwards them to a display callback
"""

import json
import os
import traceback
from datetime import datetime
from typing import Any, Callable, Dict, Optional

_PATH_KEYS = {"file", "source", "destination", "path", "output", "failed_input", "temp_dir"}


class RunLogger:
    """Persist run events to text and JSONL logs."""

    def __init__(
        self,
        logs_dir: Optional[str] = None,
        run_id: Optional[str] = None,
        privacy_mode: str = "full",
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        self.run_id = run_id or datetime.now().strftime("%Y%m%d_%H%M%S")
        self.logs_dir = logs_dir
        self.enabled = bool(logs_dir)
        self.privacy_mode = privacy_mode
        self.event_callback = event_callback
        self.text_log_path = os.path.join(logs_dir, f"run_{self.run_id}.log") if logs_dir else None
        self.jsonl_log_path = os.path.join(logs_dir, f"run_{self.run_id}.jsonl") if logs_dir else None
        self._text_handle = None
        self._jsonl_handle = None

        if self.enabled:
            os.makedirs(self.logs_dir, exist_ok=True)
            self._text_handle = open(self.text_log_path, "a", encoding="utf-8")
            self._jsonl_handle = open(self.jsonl_log_path, "a", encoding="utf-8")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def close(self) -> None:
        for handle in (self._text_handle, self._jsonl_handle):
            if handle is not None:
                try:
                    handle.close()
                except Exception:
                    pass
        self._text_handle = None
        self._jsonl_handle = None

    def _redact_value(self, key: str, value):
        if self.privacy_mode != "redacted":
            return value
        if isinstance(value, str) and key.lower() in _PATH_KEYS:
            return os.path.basename(value)
        return value

    def _sanitize_context(self, context: Dict) -> Dict:
        return {key: self._redact_value(key, value) for key, value in context.items()}

    def log(self, level: str, event: str, message: str, **context) -> Dict[str, Any]:
        timestamp = datetime.now().isoformat()
        safe_context = self._sanitize_context(context)
        payload = {
            "ts": timestamp,
            "run_id": self.run_id,
            "level": level.upper(),
            "event": event,
            "message": message,
            "context": safe_context,
        }
        if self._jsonl_handle is not None:
            self._jsonl_handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
            self._jsonl_handle.flush()

        if self._text_handle is not None:
            text_context = ""
            if safe_context:
                context_parts = [f"{key}={value}" for key, value in sorted(safe_context.items())]
                text_context = " | " + ", ".join(context_parts)
            self._text_handle.write(f"[{timestamp}] {level.upper()} {event}: {message}{text_context}\n")
            self._text_handle.flush()

        if self.event_callback:
            try:
                self.event_callback(payload)
            except Exception:
                pass
        return payload

    def info(self, message: str, event: str = "info", **context) -> Dict[str, Any]:
        return self.log("info", event, message, **context)

    def warn(self, message: str, event: str = "warning", **context) -> Dict[str, Any]:
        return self.log("warning", event, message, **context)

    def error(self, message: str, cause: Optional[BaseException] = None, event: str = "error", **context) -> Dict[str, Any]:
        """Log an error; the cause's type, text, traceback and any conversion diagnostics are kept verbatim."""
        if cause is not None:
            context.setdefault("error_type", type(cause).__name__)
            context.setdefault("error", str(cause))
            context.setdefault(
                "traceback",
                "".join(traceback.format_exception(type(cause), cause, cause.__traceback__)),
            )
            diagnostics = getattr(cause, "diagnostics", None)
            if callable(diagnostics):
                for key, value in diagnostics().items():
                    context.setdefault(key, value)
        return self.log("error", event, message, **context)
