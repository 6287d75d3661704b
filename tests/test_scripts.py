from __future__ import annotations

import importlib.util
import os
import subprocess
import sys
from pathlib import Path
from types import SimpleNamespace

ROOT = Path(__file__).resolve().parents[1]


def _run(tmp_path: Path, *args: str) -> subprocess.CompletedProcess:
    env = os.environ.copy()
    env["LOCAL_MODELS_HOME"] = str(tmp_path / "home")
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(ROOT), env.get("PYTHONPATH")]))
    env.setdefault("PYTHONWARNINGS", "ignore")
    cmd = [sys.executable, str(ROOT / "scripts" / "manage_local_models.py"), *args]
    return subprocess.run(cmd, capture_output=True, text=True, env=env, timeout=60)


def test_list_shows_catalog(tmp_path: Path) -> None:
    completed = _run(tmp_path, "list")
    assert completed.returncode == 0, completed.stderr
    assert "dmind-3-nano" in completed.stdout
    assert "recommended" in completed.stdout


def test_unload_without_server(tmp_path: Path) -> None:
    completed = _run(tmp_path, "unload")
    assert completed.returncode == 0
    assert "No model server is currently running." in completed.stdout


def test_status_reports_platform(tmp_path: Path) -> None:
    completed = _run(tmp_path, "status")
    assert completed.returncode == 0, completed.stderr
    assert "Status  " in completed.stdout
    assert "Platform " in completed.stdout


def test_chat_without_installed_model(tmp_path: Path) -> None:
    completed = _run(tmp_path, "chat", "hello")
    assert completed.returncode == 1
    assert "Install a model and Python 3 first." in completed.stderr


def _load_script():
    spec = importlib.util.spec_from_file_location("manage_local_models", ROOT / "scripts" / "manage_local_models.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class StubSupervisor:
    def __init__(self, attached=None) -> None:
        self.attached = attached

    def server_record(self):
        return None

    def is_running(self) -> bool:
        return False

    def start_attached(self, interpreter: str, model_path: str):
        return self.attached


def _stub_manager(supervisor: StubSupervisor, update=None) -> SimpleNamespace:
    return SimpleNamespace(
        config=None,
        supervisor=supervisor,
        model_in_use=lambda: SimpleNamespace(id="dmind-3-nano"),
        interpreter=lambda: "py",
        check_update=lambda model_id: update,
        resolve_path=lambda model_id: "/cache/nano",
    )


def test_chat_reports_spawn_failure(capsys) -> None:
    script = _load_script()
    assert script._chat(_stub_manager(StubSupervisor(attached=None)), "hello") == 1
    assert "Could not start the local server." in capsys.readouterr().err


def test_chat_warns_about_newer_revision(capsys) -> None:
    script = _load_script()
    update = SimpleNamespace(
        has_update=True, model_name="DMind-3 Nano", model_id="dmind-3-nano", remote_revision="def4567890abcdef"
    )
    script._chat(_stub_manager(StubSupervisor(attached=None), update=update), "hello")
    err = capsys.readouterr().err
    assert "A newer revision of DMind-3 Nano" in err
    assert "update dmind-3-nano" in err


def test_interactive_chat_keeps_history(monkeypatch, capsys) -> None:
    script = _load_script()
    lines = iter(["/help", "hi", "again", "/new", "fresh", "quit"])
    seen = []

    def reply(config, model_name, messages):
        seen.append([message["content"] for message in messages])
        yield "ok"

    monkeypatch.setattr("builtins.input", lambda prompt: next(lines))
    monkeypatch.setattr(script, "stream_chat_completion", reply)
    assert script._interactive(_stub_manager(StubSupervisor()), "/cache/nano") == 0
    assert seen == [["hi"], ["hi", "ok", "again"], ["fresh"]]
    assert capsys.readouterr().out.count("Commands:") == 2
