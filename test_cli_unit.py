"""
Unit tests for the relayhub command line entry point.
"""
import pytest

from relayhub import cli
from relayhub.config import HOST, PORT, HUB_VERSION


@pytest.fixture
def served(monkeypatch):
    calls = []
    monkeypatch.setattr(cli.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    return calls


def test_defaults_come_from_config(served):
    cli.main([])
    app, kwargs = served[0]
    assert app == "relayhub.main:app"
    assert kwargs["host"] == HOST
    assert kwargs["port"] == PORT
    assert kwargs["reload"] is False
    assert kwargs["log_level"] in ("critical", "error", "warning", "info", "debug")


def test_flags_override_defaults(served):
    cli.main(["--host", "0.0.0.0", "--port", "4000", "--log-level", "debug", "--reload"])
    _, kwargs = served[0]
    assert kwargs["host"] == "0.0.0.0"
    assert kwargs["port"] == 4000
    assert kwargs["log_level"] == "debug"
    assert kwargs["reload"] is True


def test_unknown_log_level_is_rejected(served):
    with pytest.raises(SystemExit):
        cli.main(["--log-level", "verbose"])
    assert served == []


def test_version_flag_prints_and_exits(served, capsys):
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["--version"])
    assert exc_info.value.code == 0
    assert capsys.readouterr().out.strip() == f"relayhub {HUB_VERSION}"
    assert served == []
