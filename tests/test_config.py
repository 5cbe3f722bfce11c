"""
Tests for environment and allowlist-file configuration
"""

import json

import pytest

import postbot
from postbot import BotConfig, load_allowlist_file


class TestBotConfig:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("BOT_TOKEN", "123:abc")
        monkeypatch.setenv("ALLOWLIST_IDS", "11, 22 33,abc")
        monkeypatch.setenv("DATABASE_URL", "sqlite:///./other.db")
        monkeypatch.setenv("POST_PARSE_MODE", "HTML")
        monkeypatch.delenv("ALLOWLIST_FILE", raising=False)
        monkeypatch.delenv("LOG_LEVEL", raising=False)

        config = BotConfig.from_env()

        assert config.bot_token == "123:abc"
        assert config.allowlist == frozenset({11, 22, 33})
        assert config.database_url == "sqlite:///./other.db"
        assert config.post_parse_mode == "HTML"
        assert config.log_level == "WARNING"
        assert config.allowlist_file is None

    def test_defaults(self, monkeypatch):
        monkeypatch.setenv("BOT_TOKEN", "123:abc")
        for name in ("ALLOWLIST_IDS", "ALLOWLIST", "DATABASE_URL", "POST_PARSE_MODE", "ALLOWLIST_FILE"):
            monkeypatch.delenv(name, raising=False)

        config = BotConfig.from_env()

        assert config.allowlist == frozenset()
        assert config.database_url == postbot.DEFAULT_DATABASE_URL
        assert config.post_parse_mode == "MarkdownV2"

    def test_legacy_allowlist_variable_and_plain_posts(self, monkeypatch):
        monkeypatch.setenv("BOT_TOKEN", "123:abc")
        monkeypatch.delenv("ALLOWLIST_IDS", raising=False)
        monkeypatch.setenv("ALLOWLIST", "7")
        monkeypatch.setenv("POST_PARSE_MODE", "none")

        config = BotConfig.from_env()

        assert config.allowlist == frozenset({7})
        assert config.post_parse_mode is None

    def test_log_level(self, monkeypatch):
        monkeypatch.setenv("BOT_TOKEN", "123:abc")
        monkeypatch.setenv("LOG_LEVEL", " debug ")

        assert BotConfig.from_env().log_level == "DEBUG"

    def test_missing_token(self, monkeypatch):
        monkeypatch.delenv("BOT_TOKEN", raising=False)

        with pytest.raises(RuntimeError):
            BotConfig.from_env()


class TestAllowlistFile:
    @pytest.mark.asyncio
    async def test_list_format(self, tmp_path):
        path = tmp_path / "allow.json"
        path.write_text(json.dumps([1, "2", "x", True]))

        assert await load_allowlist_file(str(path)) == {1, 2}

    @pytest.mark.asyncio
    async def test_object_format(self, tmp_path):
        path = tmp_path / "allow.json"
        path.write_text(json.dumps({"allowlist": [5, " 6 "]}))

        assert await load_allowlist_file(str(path)) == {5, 6}

    @pytest.mark.asyncio
    async def test_bad_files_contribute_nothing(self, tmp_path):
        empty = tmp_path / "empty.json"
        empty.write_text("  ")
        broken = tmp_path / "broken.json"
        broken.write_text("{not json")

        assert await load_allowlist_file(None) == set()
        assert await load_allowlist_file(str(tmp_path / "missing.json")) == set()
        assert await load_allowlist_file(str(empty)) == set()
        assert await load_allowlist_file(str(broken)) == set()
