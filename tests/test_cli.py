"""
Tests for the mail-vault command line.
"""

from __future__ import annotations

import asyncpg
import pytest

from mail_vault import StorageError
from mail_vault.cli import build_parser, main


def test_parser_subcommands():
    parser = build_parser()
    assert parser.parse_args(["sweep", "weekly"]).cadence == "weekly"
    args = parser.parse_args(["import", "bundle.json", "--target-user", "7"])
    assert (args.command, args.file, args.target_user) == ("import", "bundle.json", 7)


def test_unknown_cadence_is_rejected():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["sweep", "hourly"])


def test_missing_secrets_exit_nonzero(tmp_path, monkeypatch, capsys):
    for name in ("EMAIL_MASTER_SECRET", "EMAIL_ENCRYPTION_SALT", "RECOVERY_SALT"):
        monkeypatch.delenv(name, raising=False)

    with pytest.raises(SystemExit) as exc:
        main(["--env-file", str(tmp_path / "missing.env"), "sweep", "daily"])

    assert exc.value.code == 1
    assert "EMAIL_MASTER_SECRET" in capsys.readouterr().err


def test_unreachable_database_is_reported(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("EMAIL_MASTER_SECRET", "cli-master")
    monkeypatch.setenv("EMAIL_ENCRYPTION_SALT", "cli-storage-salt")
    monkeypatch.setenv("RECOVERY_SALT", "cli-recovery-salt")
    monkeypatch.setenv("DATABASE_URL", "postgresql://nowhere.invalid/vault")

    async def refuse(*args, **kwargs):
        raise OSError("Connection refused")

    monkeypatch.setattr(asyncpg, "create_pool", refuse)

    with pytest.raises(SystemExit) as exc:
        main(["--env-file", str(tmp_path / "missing.env"), "init-db"])

    assert exc.value.code == 1
    assert StorageError.public_message in capsys.readouterr().err
