"""Tests for main.py -- the maintenance CLI.

Covers:
- init-db creates the schema in the configured database
- create-account registers an account; mismatched or invalid input exits 1
- sweep reports what it removed
"""

import pytest
from sqlalchemy import create_engine, inspect

import main
from auth.schema import make_engine
from auth.store import AccountStore, SqlAccountBackend
from core.config import Settings


@pytest.fixture
def db_url(tmp_path, monkeypatch) -> str:
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    settings = Settings(debug=True, database_url=url, bcrypt_rounds=4, storage_retry_base_delay=0)
    monkeypatch.setattr(main, "get_settings", lambda: settings)
    return url


def _passwords(monkeypatch, *answers: str) -> None:
    replies = iter(answers)
    monkeypatch.setattr(main.getpass, "getpass", lambda prompt="": next(replies))


def test_init_db(db_url, capsys):
    assert main.main(["init-db"]) == 0
    engine = create_engine(db_url)
    try:
        assert {"accounts", "identity_keys", "sessions"} <= set(inspect(engine).get_table_names())
    finally:
        engine.dispose()
    assert "Schema ready" in capsys.readouterr().out


def test_create_account(db_url, monkeypatch, capsys):
    _passwords(monkeypatch, "pw12345", "pw12345")
    assert main.main(["create-account", "alice", "alice@x.com", "+1555"]) == 0
    assert "Created account" in capsys.readouterr().out

    engine = make_engine(db_url)
    try:
        assert AccountStore(SqlAccountBackend(engine)).find_by_email("alice@x.com").username == "alice"
    finally:
        engine.dispose()


def test_create_account_password_mismatch(db_url, monkeypatch, capsys):
    _passwords(monkeypatch, "pw12345", "pw54321")
    assert main.main(["create-account", "alice", "alice@x.com", "+1555"]) == 1
    assert "do not match" in capsys.readouterr().out


def test_create_account_reports_field_errors(db_url, monkeypatch, capsys):
    _passwords(monkeypatch, "pw1", "pw1")
    assert main.main(["create-account", "alice", "alice@x.com", "+1555"]) == 1
    out = capsys.readouterr().out
    assert "Invalid registration details." in out
    assert "password:" in out


def test_sweep_on_empty_db(db_url, capsys):
    assert main.main(["sweep"]) == 0
    assert "Removed 0 expired session(s), 0 stale reservation key(s)." in capsys.readouterr().out


def test_unknown_command_exits():
    with pytest.raises(SystemExit):
        main.main(["bogus"])
