import importlib
import io
import sys
from pathlib import Path

import pytest

from repro_cli import __main__ as cli_entry


def test_console_module_entrypoint_delegates_to_cli_main(monkeypatch):
    cli_main = importlib.import_module("repro_cli.main")
    monkeypatch.setattr(cli_main, "main", lambda *args: 7)

    assert cli_entry.run() == 7
    assert cli_entry.main() == 7


def test_no_command_prints_help_and_fails(capsys: pytest.CaptureFixture[str]) -> None:
    cli_main = importlib.import_module("repro_cli.main")

    assert cli_main.main([], prog="repro-threshold") == 2
    assert "transport" in capsys.readouterr().err


def test_every_group_is_registered() -> None:
    api = importlib.import_module("repro_cli.api")
    importlib.import_module("repro_cli.main")

    names = {(spec.group, spec.name) for spec in api.registered_commands()}

    assert {
        ("transport", "apt"),
        ("transport", "alpm"),
        ("plumbing", "verify"),
        ("plumbing", "inspect"),
        ("plumbing", "inspect-deb"),
        ("plumbing", "list-rebuilders"),
        ("plumbing", "check-config"),
        ("plumbing", "decide"),
    } <= names


def test_multicall_name_runs_the_apt_method(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config = tmp_path / "config.toml"
    config.write_text(
        '[rules]\ncache = "off"\n\n[[trusted_rebuilder]]\nurl = "https://rebuilder.example"\n',
        encoding="utf-8",
    )
    monkeypatch.setenv("REPRO_THRESHOLD_CONFIG", str(config))
    monkeypatch.setattr(sys, "stdin", io.StringIO(""))
    cli_main = importlib.import_module("repro_cli.main")

    code = cli_main.main([], prog="/usr/lib/apt/methods/reproduced+https")

    assert code == 0
    assert capsys.readouterr().out.startswith("100 Capabilities\n")


def test_multicall_reports_config_errors_on_the_wire(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("REPRO_THRESHOLD_CONFIG", str(tmp_path / "missing.toml"))
    monkeypatch.setattr(sys, "stdin", io.StringIO(""))
    cli_main = importlib.import_module("repro_cli.main")

    code = cli_main.main([], prog="/usr/lib/apt/methods/reproduced+http")

    out = capsys.readouterr().out
    assert code == 2
    assert "401 General Failure" in out
    assert "Message: Configuration error:" in out


def test_multicall_survives_an_unusable_cache_directory(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("occupied", encoding="utf-8")
    config = tmp_path / "config.toml"
    config.write_text('[[trusted_rebuilder]]\nurl = "https://rebuilder.example"\n', encoding="utf-8")
    monkeypatch.setenv("REPRO_THRESHOLD_CONFIG", str(config))
    monkeypatch.setenv("XDG_CACHE_HOME", str(blocker))
    monkeypatch.setattr(sys, "stdin", io.StringIO(""))
    cli_main = importlib.import_module("repro_cli.main")

    code = cli_main.main([], prog="/usr/lib/apt/methods/reproduced+https")

    captured = capsys.readouterr()
    assert code == 0
    assert captured.out.startswith("100 Capabilities\n")
    assert "verdict cache" in captured.err


def test_log_level_env_is_honoured(monkeypatch: pytest.MonkeyPatch) -> None:
    import logging

    cli_main = importlib.import_module("repro_cli.main")
    monkeypatch.setenv("REPRO_THRESHOLD_LOG", "debug")

    cli_main.configure_logging(0)

    assert logging.getLogger("repro_core").level == logging.DEBUG
    assert logging.getLogger().level == logging.WARNING
