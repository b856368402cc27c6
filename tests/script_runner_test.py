import codecs
import os
import subprocess

import pytest

import script_runner
from conversion_errors import ScriptExecutionError
from script_runner import ScriptResult, ScriptRunner


def _install_popen(monkeypatch, returncode=0, stdout=b"", stderr=b"", hang=False, spawn_error=None, interrupt=False):
    created = []

    class FakePopen:
        def __init__(self, command, **kwargs):
            self.command = command
            self.kwargs = kwargs
            self.script_path = command[-1]
            with open(self.script_path, "rb") as handle:
                self.script_bytes = handle.read()
            self.returncode = None
            self.killed = False
            created.append(self)
            if spawn_error is not None:
                raise spawn_error

        def communicate(self, timeout=None):
            if interrupt and not self.killed:
                raise KeyboardInterrupt
            if hang and not self.killed:
                raise subprocess.TimeoutExpired(self.command, timeout)
            if self.killed:
                self.returncode = -9
                return b"[CONVERTED] 1\n", b""
            self.returncode = returncode
            return stdout, stderr

        def kill(self):
            self.killed = True

        def poll(self):
            return self.returncode

    monkeypatch.setattr(script_runner.subprocess, "Popen", FakePopen)
    return created


def test_script_is_written_with_utf8_bom_and_removed_afterwards(monkeypatch):
    created = _install_popen(monkeypatch, stdout=b"[CONVERTED] 1\n")
    script = "$inputPath = 'C:\\Документы\\отчёт.doc'\n"

    result = ScriptRunner("powershell").run_script(script, timeout=30)

    assert result == ScriptResult(0, "[CONVERTED] 1\n", "")
    process = created[0]
    assert process.script_bytes.startswith(codecs.BOM_UTF8)
    assert process.script_bytes[len(codecs.BOM_UTF8):].decode("utf-8") == script
    assert process.script_path.endswith(".ps1")
    assert not os.path.exists(process.script_path)


def test_command_runs_single_threaded_apartment_without_profile(monkeypatch):
    created = _install_popen(monkeypatch)

    ScriptRunner("pwsh").run_script("exit 0", timeout=5)

    command = created[0].command
    assert command[0] == "pwsh"
    assert "-STA" in command
    assert "-NoProfile" in command
    assert "-NonInteractive" in command
    assert command[command.index("-ExecutionPolicy") + 1] == "Bypass"
    assert command[-2] == "-File"
    assert created[0].kwargs["stdin"] is subprocess.DEVNULL


def test_non_zero_exit_carries_full_diagnostics(monkeypatch):
    _install_popen(monkeypatch, returncode=1, stdout=b"[CONVERTED] 1\n", stderr=b"[FAILED_ITEM] 2\nboom\n")

    with pytest.raises(ScriptExecutionError) as excinfo:
        ScriptRunner("powershell").run_script("exit 1", timeout=5)

    error = excinfo.value
    assert error.kind == "non_zero_exit"
    assert error.exit_code == 1
    assert error.stdout == "[CONVERTED] 1\n"
    assert "[FAILED_ITEM] 2" in error.stderr


def test_timeout_kills_process_and_keeps_partial_output(monkeypatch):
    created = _install_popen(monkeypatch, hang=True)

    with pytest.raises(ScriptExecutionError) as excinfo:
        ScriptRunner("powershell").run_script("Start-Sleep 600", timeout=0.5)

    error = excinfo.value
    assert error.kind == "timeout"
    assert error.exit_code == -1
    assert error.stdout == "[CONVERTED] 1\n"
    assert "timed out" in error.stderr
    assert created[0].killed is True
    assert not os.path.exists(created[0].script_path)


def test_missing_interpreter_fails_without_spawning(monkeypatch):
    created = _install_popen(monkeypatch)

    with pytest.raises(ScriptExecutionError) as excinfo:
        ScriptRunner(None).run_script("exit 0", timeout=5)

    assert excinfo.value.kind == "interpreter_not_found"
    assert excinfo.value.exit_code == -1
    assert created == []


def test_spawn_failure_is_reported_and_script_removed(monkeypatch):
    created = _install_popen(monkeypatch, spawn_error=FileNotFoundError("powershell"))

    with pytest.raises(ScriptExecutionError) as excinfo:
        ScriptRunner("powershell").run_script("exit 0", timeout=5)

    assert excinfo.value.kind == "spawn_error"
    assert not os.path.exists(created[0].script_path)


def test_resolve_interpreter_prefers_windows_powershell(monkeypatch):
    seen = []

    def fake_run(command, **kwargs):
        seen.append(command[0])
        return subprocess.CompletedProcess(command, 0)

    monkeypatch.setattr(script_runner.subprocess, "run", fake_run)

    assert script_runner.resolve_interpreter() == "powershell"
    assert seen == ["powershell"]


def test_resolve_interpreter_falls_back_to_pwsh(monkeypatch):
    def fake_run(command, **kwargs):
        if command[0] == "powershell":
            raise FileNotFoundError(command[0])
        return subprocess.CompletedProcess(command, 0)

    monkeypatch.setattr(script_runner.subprocess, "run", fake_run)

    assert script_runner.resolve_interpreter() == "pwsh"


def test_unresponsive_interpreter_counts_as_missing(monkeypatch):
    def fake_run(command, **kwargs):
        raise subprocess.TimeoutExpired(command, kwargs.get("timeout"))

    monkeypatch.setattr(script_runner.subprocess, "run", fake_run)

    assert script_runner.resolve_interpreter() is None


def test_default_interpreter_is_resolved_once(monkeypatch):
    calls = []

    def fake_run(command, **kwargs):
        calls.append(command[0])
        return subprocess.CompletedProcess(command, 1)

    monkeypatch.setattr(script_runner.subprocess, "run", fake_run)
    monkeypatch.setattr(script_runner, "_resolved", False)
    monkeypatch.setattr(script_runner, "_resolved_interpreter", None)

    assert script_runner.default_interpreter() is None
    assert script_runner.default_interpreter() is None
    assert calls == ["powershell", "pwsh"]


def test_interrupted_wait_kills_process_and_reports_interrupted(monkeypatch):
    created = _install_popen(monkeypatch, interrupt=True)

    with pytest.raises(ScriptExecutionError) as excinfo:
        ScriptRunner("powershell").run_script("Start-Sleep 600", timeout=30)

    error = excinfo.value
    assert error.kind == "interrupted"
    assert error.exit_code == -1
    assert error.stdout == "[CONVERTED] 1\n"
    assert created[0].killed is True
    assert not os.path.exists(created[0].script_path)
