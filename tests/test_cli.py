import logging

import pytest

from homelab_ca import cli
from homelab_ca.common.config import PASSPHRASE_ENV
from homelab_ca.common.errors import ValidationError

from conftest import PASSPHRASE


@pytest.fixture(autouse=True)
def _reset_logging(monkeypatch):
    monkeypatch.setenv(PASSPHRASE_ENV, PASSPHRASE)
    yield
    logger = logging.getLogger("homelab_ca")
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)


def test_init_then_list(config_path, capsys):
    assert cli.main(["--config", str(config_path), "init"]) == 0
    out = capsys.readouterr().out
    assert "Subject:" in out
    assert "ca-chain.crt" in out

    assert cli.main(["--config", str(config_path), "list"]) == 0
    out = capsys.readouterr().out
    assert "root-ca.crt" in out
    assert "intermediate-ca.crt" in out


def test_second_init_succeeds(config_path):
    assert cli.main(["--config", str(config_path), "init"]) == 0
    assert cli.main(["--config", str(config_path), "init"]) == 0


def test_server_command(config_path, capsys):
    cli.main(["--config", str(config_path), "init"])
    capsys.readouterr()

    assert cli.main(["--config", str(config_path), "server", "app.test", "app.test,www.app.test"]) == 0
    out = capsys.readouterr().out
    assert "Serial: 1000" in out
    assert "server-fullchain.crt" in out


def test_server_empty_common_name_fails(config_path):
    cli.main(["--config", str(config_path), "init"])
    assert cli.main(["--config", str(config_path), "server", "", "a.test"]) == 1


def test_server_before_init_fails(config_path):
    assert cli.main(["--config", str(config_path), "server", "a.test", "a.test"]) == 1


def test_list_without_certificates_fails(config_path):
    assert cli.main(["--config", str(config_path), "list"]) == 1


def test_k8s_export_command(config_path, capsys):
    cli.main(["--config", str(config_path), "init"])
    capsys.readouterr()
    assert cli.main(["--config", str(config_path), "k8s-export"]) == 0
    assert "install-to-k8s.sh" in capsys.readouterr().out


def test_missing_config_fails(tmp_path):
    assert cli.main(["--config", str(tmp_path / "missing.conf"), "init"]) == 1


def test_tooling_check_reports_openssl():
    assert "OpenSSL" in cli.check_tooling()


def test_passphrase_prompt_confirms(monkeypatch):
    monkeypatch.delenv(PASSPHRASE_ENV)
    answers = iter(["first", "second"])
    monkeypatch.setattr(cli.getpass, "getpass", lambda prompt: next(answers))
    with pytest.raises(ValidationError, match="do not match"):
        cli.prompt_passphrase(confirm=True)


def test_passphrase_from_environment():
    assert cli.prompt_passphrase(confirm=True) == PASSPHRASE


@pytest.mark.parametrize("argv", [["server", "app.test"], ["bogus"], []])
def test_usage_errors_exit_1(argv, capsys):
    assert cli.main(argv) == 1
    assert "usage:" in capsys.readouterr().err


def test_help_exits_0(capsys):
    assert cli.main(["--help"]) == 0
    assert "k8s-export" in capsys.readouterr().out


def test_reserved_subject_does_not_break_later_requests(config_path):
    cli.main(["--config", str(config_path), "init"])
    assert cli.main(["--config", str(config_path), "server", "registry.json", "a.test"]) == 1
    assert cli.main(["--config", str(config_path), "server", "other.test", "other.test"]) == 0
