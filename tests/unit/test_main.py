"""Unit tests for the CLI entrypoint (simulated toolchain)."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import Mock

import pytest

from keysign_ceremony.ceremony import main as main_module

TARGET = "A" * 40


@pytest.fixture
def cli_env(clean_env: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("CEREMONY_SIGNING_IDENTITIES", "org-release")
    monkeypatch.setenv("CEREMONY_JOURNAL_PATH", str(clean_env / "journal.json"))
    monkeypatch.setattr(main_module, "configure_logging", lambda level: None)
    monkeypatch.setattr(main_module, "install_signal_handlers", lambda: None)
    return clean_env


def _use_ceremony(monkeypatch: pytest.MonkeyPatch, ceremony: object) -> Mock:
    factory = Mock()
    factory.from_settings.return_value = ceremony
    monkeypatch.setattr(main_module, "SigningCeremony", factory)
    return factory


def test_sign_runs_ceremony_and_writes_journal(
    cli_env: Path, monkeypatch: pytest.MonkeyPatch, toolchain, make_ceremony, capsys
) -> None:
    factory = _use_ceremony(monkeypatch, make_ceremony())

    code = main_module.main(["sign", "--key", TARGET])

    assert code == main_module.EXIT_OK
    settings = factory.from_settings.call_args.args[0]
    assert settings.target_key == TARGET
    assert f"Signed {TARGET}" in capsys.readouterr().out

    journal = json.loads((cli_env / "journal.json").read_text(encoding="utf-8"))
    assert journal[0]["status"] == "completed"
    assert journal[0]["identities"] == ["org-release"]


def test_operator_abort_exit_code(
    cli_env: Path, monkeypatch: pytest.MonkeyPatch, toolchain, make_ceremony
) -> None:
    toolchain.keyserver_keys["hkps://keys.example.org"].add("AAAAAAAA")
    toolchain.fingerprint_matches["AAAAAAAA"] = [TARGET]
    _use_ceremony(monkeypatch, make_ceremony(target="AAAAAAAA", answer="nope\n"))

    code = main_module.main(["sign", "--key", "AAAAAAAA"])

    assert code == main_module.EXIT_OPERATOR_ABORT
    assert not toolchain.volume_exists


def test_step_failure_exit_code(
    cli_env: Path, monkeypatch: pytest.MonkeyPatch, toolchain, make_ceremony, capsys
) -> None:
    toolchain.fail_ops.add("--import")
    _use_ceremony(monkeypatch, make_ceremony())

    code = main_module.main(["sign", "--key", TARGET])

    assert code == main_module.EXIT_STEP_FAILED
    assert "Set up ceremony keyring" in capsys.readouterr().err


def test_teardown_failure_exit_code(
    cli_env: Path, monkeypatch: pytest.MonkeyPatch, toolchain, make_ceremony
) -> None:
    toolchain.fail_ops.add("ramdisk-destroy")
    _use_ceremony(monkeypatch, make_ceremony())

    assert main_module.main(["sign", "--key", TARGET]) == main_module.EXIT_TEARDOWN_FAILED


def test_missing_target_key_is_a_config_error(cli_env: Path) -> None:
    assert main_module.main(["sign"]) == main_module.EXIT_CONFIG


def test_invalid_settings_exit_code(clean_env: Path, capsys) -> None:
    assert main_module.main(["sign", "--key", TARGET]) == main_module.EXIT_CONFIG
    assert "Configuration error" in capsys.readouterr().err


def test_destroy_volume_command(
    cli_env: Path, monkeypatch: pytest.MonkeyPatch, capsys
) -> None:
    destroy = Mock(return_value=True)
    monkeypatch.setattr(main_module, "destroy_leftover_volume", destroy)

    assert main_module.main(["destroy-volume"]) == main_module.EXIT_OK
    assert "Destroyed volume gpg-ceremony" in capsys.readouterr().out
