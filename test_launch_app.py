#!/usr/bin/env python3
import sys

import pytest

import launch_app


def test_command_uses_current_interpreter():
    cmd = launch_app.streamlit_command(port=9000)

    assert cmd[:4] == [sys.executable, "-m", "streamlit", "run"]
    assert cmd[4] == str(launch_app.APP_FILE)
    assert cmd[cmd.index("--server.port") + 1] == "9000"
    assert cmd[cmd.index("--server.headless") + 1] == "false"


def test_app_file_sits_beside_launcher():
    assert launch_app.APP_FILE.name == "streamlit_app.py"
    assert launch_app.APP_FILE.exists()


def test_main_runs_streamlit(monkeypatch):
    """No virtual environment is needed next to the launcher"""
    calls = []

    class Done:
        returncode = 0

    def fake_run(cmd, *args, **kwargs):
        calls.append(cmd)
        return Done()

    monkeypatch.setattr(launch_app.subprocess, "run", fake_run)

    assert launch_app.main(["--port", "8600", "--headless"]) == 0
    assert len(calls) == 1
    assert calls[0][0] == sys.executable
    assert calls[0][calls[0].index("--server.headless") + 1] == "true"


def test_main_reports_missing_app(monkeypatch, tmp_path):
    monkeypatch.setattr(launch_app, "APP_FILE", tmp_path / "streamlit_app.py")
    assert launch_app.main([]) == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
