"""
Tests for configuration loading and the read-only CLI commands.
"""

from pathlib import Path

import pytest
from typer.testing import CliRunner

from caldav_calendar_sync.cli import app
from caldav_calendar_sync.cli import load_config
from caldav_calendar_sync.db import CacheDatabase
from caldav_calendar_sync.models import DEFAULT_SYNC_INTERVAL_MINUTES
from caldav_calendar_sync.models import ConfigError
from tests.conftest import make_row

CONFIG = """\
[caldav]
username = alice
password = p%ss
hostname = caldav.example.com
base_path = /123/calendars

[sync]
db_path = {db_path}
interval_minutes = 5
default_calendar = work

[calendars]
work = /work/
family = /family/
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "sync.conf"
    path.write_text(CONFIG.format(db_path=tmp_path / "cache.db"))
    return path


class TestLoadConfig:
    def test_reads_all_sections(self, config_file, tmp_path):
        cfg = load_config(config_file, environ={})

        assert cfg.credentials.username == "alice"
        assert cfg.credentials.password == "p%ss"
        assert cfg.credentials.collections_base_path == "/123/calendars"
        assert cfg.db_path == tmp_path / "cache.db"
        assert cfg.sync_interval_minutes == 5
        assert cfg.default_calendar == "work"
        assert [c.name for c in cfg.calendars] == ["work", "family"]

    def test_environment_overrides_file(self, config_file):
        cfg = load_config(
            config_file,
            environ={"CALDAV_USERNAME": "bob", "CALDAV_HOSTNAME": "dav.other.org", "CALDAV_PATH": "/x"},
        )
        assert cfg.credentials.username == "bob"
        assert cfg.credentials.hostname == "dav.other.org"
        assert cfg.credentials.collections_base_path == "/x"
        assert cfg.credentials.password == "p%ss"

    def test_environment_only(self, tmp_path):
        cfg = load_config(
            tmp_path / "missing.conf",
            environ={"CALDAV_USERNAME": "u", "CALDAV_PASSWORD": "p", "CALDAV_HOSTNAME": "h"},
        )
        assert cfg.sync_interval_minutes == DEFAULT_SYNC_INTERVAL_MINUTES
        assert [c.name for c in cfg.calendars] == ["shared", "home", "work", "meals"]
        assert cfg.default_calendar == "shared"

    def test_state_db_argument_wins(self, config_file, tmp_path):
        cfg = load_config(config_file, state_db=tmp_path / "other.db", environ={})
        assert cfg.db_path == tmp_path / "other.db"

    def test_missing_credentials(self, tmp_path):
        with pytest.raises(ConfigError, match="password"):
            load_config(
                tmp_path / "missing.conf",
                environ={"CALDAV_USERNAME": "u", "CALDAV_HOSTNAME": "h"},
            )

    def test_unknown_default_calendar(self, tmp_path):
        path = tmp_path / "bad.conf"
        path.write_text(
            "[caldav]\nusername = u\npassword = p\nhostname = h\n[sync]\ndefault_calendar = nope\n"
        )
        with pytest.raises(ConfigError):
            load_config(path, environ={})


class TestCommands:
    def test_status_without_cache(self, tmp_path):
        result = CliRunner().invoke(
            app,
            ["--config", str(tmp_path / "none.conf"), "--state-db", str(tmp_path / "none.db"), "status"],
        )
        assert result.exit_code == 0
        assert "No cache yet" in result.output

    def test_status_with_cache(self, tmp_path):
        db_path: Path = tmp_path / "cache.db"
        with CacheDatabase(db_path) as cache:
            cache.upsert_many([make_row("w1"), make_row("h1", calendar="home")], preserve_metadata=False)

        result = CliRunner().invoke(
            app, ["--config", str(tmp_path / "none.conf"), "--state-db", str(db_path), "status"]
        )
        assert result.exit_code == 0
        assert "work" in result.output
        assert "home" in result.output

    def test_sync_without_credentials_exits(self, tmp_path, monkeypatch):
        for var in ("CALDAV_USERNAME", "CALDAV_PASSWORD", "CALDAV_HOSTNAME", "CALDAV_PATH"):
            monkeypatch.delenv(var, raising=False)

        result = CliRunner().invoke(app, ["--config", str(tmp_path / "none.conf"), "sync"])

        assert result.exit_code == 1
        assert "Missing CalDAV credentials" in result.output
