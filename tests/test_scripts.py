from __future__ import annotations

import importlib.util
import json
import pathlib
import sys

ROOT = pathlib.Path(__file__).resolve().parents[1]


def _load_script(name: str):
    spec = importlib.util.spec_from_file_location(f"script_{name}", ROOT / "scripts" / f"{name}.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_run_api_serves_app_with_uvicorn(monkeypatch):
    module = _load_script("run_api")
    calls: list[tuple[str, dict]] = []
    monkeypatch.setattr(module.uvicorn, "run", lambda target, **kwargs: calls.append((target, kwargs)))
    monkeypatch.setattr(sys, "argv", ["run_api.py", "--port", "9010"])

    assert module.main() == 0
    assert calls == [("velocity.main:app", {"host": "127.0.0.1", "port": 9010, "reload": False})]


def test_run_worker_stops_after_iterations(monkeypatch, capsys):
    module = _load_script("run_worker")
    monkeypatch.setattr(sys, "argv", ["run_worker.py", "--iterations", "2", "--poll-interval-ms", "1"])

    assert module.main() == 0
    out = json.loads(capsys.readouterr().out)
    assert out["success"] is True
    assert out["stats"]["ticks"] == 2
    assert out["stats"]["processed"] == 0
