"""
Engine selection - probe Word and WPS, cache the results, and resolve the user's converter mode
"""

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from com_engines import (
    MS_WORD,
    WPS_WRITER,
    ConversionEngine,
    ProbeResult,
    default_coordinator,
)
from conversion_errors import CapabilityUnavailable
from script_runner import ScriptRunner

PROBE_CACHE_TTL_SECONDS = 60


class ConverterMode(Enum):
    AUTO = "auto"
    PRIMARY_ONLY = "primary_only"
    SECONDARY_ONLY = "secondary_only"

    @property
    def label(self) -> str:
        return _MODE_LABELS[self]

    def __str__(self) -> str:
        return self.label

    @classmethod
    def from_config(cls, value: Optional[str]) -> "ConverterMode":
        """Parse a persisted mode string; blank or unknown values fall back to AUTO."""
        if value is None or not str(value).strip():
            return cls.AUTO
        key = str(value).strip().lower()
        key = _MODE_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            return cls.AUTO


_MODE_LABELS = {
    ConverterMode.AUTO: "Auto (Word preferred)",
    ConverterMode.PRIMARY_ONLY: "Word only",
    ConverterMode.SECONDARY_ONLY: "WPS only",
}

_MODE_ALIASES = {
    "word_only": "primary_only",
    "wps_only": "secondary_only",
}


@dataclass(frozen=True)
class Selection:
    engine: ConversionEngine
    probe: ProbeResult


@dataclass(frozen=True)
class ProbeSummary:
    primary: ProbeResult
    secondary: ProbeResult
    selection: Optional[Selection]

    def any_available(self) -> bool:
        return self.primary.available or self.secondary.available

    def current_engine_label(self) -> str:
        if self.selection is None:
            return "None"
        return self.selection.probe.engine_name


@dataclass(frozen=True)
class CachedProbe:
    summary: ProbeSummary
    timestamp: float

    def is_fresh(self, now: float, ttl_seconds: float) -> bool:
        return (now - self.timestamp) < ttl_seconds


def select_available(primary_engine, primary_probe, secondary_engine, secondary_probe) -> Optional[Selection]:
    if primary_probe.available:
        return Selection(primary_engine, primary_probe)
    if secondary_probe.available:
        return Selection(secondary_engine, secondary_probe)
    return None


class EngineSelector:
    """Probes both engines and keeps the snapshot for ``ttl_seconds``."""

    def __init__(
        self,
        primary: ConversionEngine,
        secondary: ConversionEngine,
        ttl_seconds: float = PROBE_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.primary = primary
        self.secondary = secondary
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._state_lock = threading.Lock()
        self._refresh_lock = threading.Lock()
        self._cached: Optional[CachedProbe] = None

    def cached_summary(self) -> Optional[ProbeSummary]:
        """Last snapshot regardless of age, without probing."""
        with self._state_lock:
            cached = self._cached
        return cached.summary if cached else None

    def _fresh_cache(self) -> Optional[CachedProbe]:
        with self._state_lock:
            cached = self._cached
        if cached is not None and cached.is_fresh(self.clock(), self.ttl_seconds):
            return cached
        return None

    def probe_all(self, force_refresh: bool = False) -> ProbeSummary:
        if not force_refresh:
            cached = self._fresh_cache()
            if cached is not None:
                return cached.summary

        with self._refresh_lock:
            if not force_refresh:
                # Another caller may have refreshed while we waited.
                cached = self._fresh_cache()
                if cached is not None:
                    return cached.summary
            primary_probe = self.primary.probe()
            secondary_probe = self.secondary.probe()
            summary = ProbeSummary(
                primary_probe,
                secondary_probe,
                select_available(self.primary, primary_probe, self.secondary, secondary_probe),
            )
            with self._state_lock:
                self._cached = CachedProbe(summary, self.clock())
        return summary

    def invalidate(self) -> None:
        with self._state_lock:
            self._cached = None


@dataclass(frozen=True)
class Resolution:
    mode: ConverterMode
    summary: ProbeSummary
    selection: Optional[Selection]
    error_message: Optional[str]


class EngineResolver:
    """Applies a ConverterMode to the selector's snapshot."""

    def __init__(self, selector: EngineSelector):
        self.selector = selector

    def resolve(self, mode: ConverterMode = ConverterMode.AUTO, force_refresh: bool = False) -> Resolution:
        summary = self.selector.probe_all(force_refresh)
        primary_name = self.selector.primary.engine_name
        secondary_name = self.selector.secondary.engine_name
        selection = None
        error_message = None

        if mode is ConverterMode.AUTO:
            selection = select_available(self.selector.primary, summary.primary, self.selector.secondary, summary.secondary)
            if selection is None:
                error_message = (
                    f"Neither {primary_name} nor {secondary_name} is available "
                    f"(mode: {mode.label}; {primary_name}: {summary.primary.message}; "
                    f"{secondary_name}: {summary.secondary.message})"
                )
        elif mode is ConverterMode.PRIMARY_ONLY:
            if summary.primary.available:
                selection = Selection(self.selector.primary, summary.primary)
            else:
                error_message = f"{primary_name} is not available (mode: {mode.label}): {summary.primary.message}"
        elif mode is ConverterMode.SECONDARY_ONLY:
            if summary.secondary.available:
                selection = Selection(self.selector.secondary, summary.secondary)
            else:
                error_message = f"{secondary_name} is not available (mode: {mode.label}): {summary.secondary.message}"
        else:
            error_message = "No usable document conversion engine"

        return Resolution(mode, summary, selection, error_message)

    def require_selection(self, mode: ConverterMode = ConverterMode.AUTO, force_refresh: bool = False) -> Selection:
        resolution = self.resolve(mode, force_refresh)
        if resolution.selection is None:
            raise CapabilityUnavailable(resolution.error_message or "No usable document conversion engine")
        return resolution.selection


def build_default_resolver(runner: Optional[ScriptRunner] = None, coordinator=None, **engine_options) -> EngineResolver:
    """Word as primary, WPS as secondary, sharing one runner and the process-wide lock."""
    runner = runner or ScriptRunner.from_environment()
    coordinator = coordinator or default_coordinator()
    word = ConversionEngine(MS_WORD, runner, coordinator, **engine_options)
    wps = ConversionEngine(WPS_WRITER, runner, coordinator, **engine_options)
    return EngineResolver(EngineSelector(word, wps))
