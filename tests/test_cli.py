import pytest

from attsync import cli, config, session
from attsync.ledger import Ledger


@pytest.fixture
def wired(monkeypatch, network, terminal, tmp_path):
    db_url = f"sqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setattr(session, "default_transport", network.transport)
    monkeypatch.setattr(config, "DB_URL", db_url)
    return db_url


def test_usage_without_command(capsys):
    assert cli.main(["10.0.0.5"]) == 1
    assert "Usage" in capsys.readouterr().out


def test_info(wired, capsys, terminal):
    assert cli.main(["10.0.0.5", "info"]) == 0
    out = capsys.readouterr().out
    assert terminal.serial in out
    assert terminal.open_sockets == 0


def test_logs_with_explicit_port(wired, capsys, terminal):
    assert cli.main(["10.0.0.5", "4370", "logs"]) == 0
    out = capsys.readouterr().out
    assert "Punches (3)" in out
    assert terminal.enabled


def test_unknown_command_never_touches_the_terminal(wired, capsys, terminal):
    assert cli.main(["10.0.0.5", "reboot"]) == 1
    assert "Unknown command" in capsys.readouterr().out
    assert terminal.opened == 0


def test_unreachable_terminal(wired, capsys):
    assert cli.main(["10.0.0.99", "info"]) == 2
    assert "HostUnreachable" in capsys.readouterr().out


def test_sync(wired, capsys):
    Ledger(wired).map_device_user(None, "101", "EMP-001")
    assert cli.main(["10.0.0.5", "sync", "gate-1"]) == 0
    out = capsys.readouterr().out
    assert "Inserted:   2" in out
    assert "Unmapped users: 102" in out
    assert Ledger(wired).count_events("gate-1") == 2
