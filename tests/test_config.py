"""
tests/test_config.py — YAML Configuration Loader Tests
=======================================================
"""

from __future__ import annotations

import pytest

from nightwatch.config import DEFAULT_NOTIFY_CHANNEL, load_config


def _write(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


class TestLoadConfig:
    def test_full_file(self, tmp_path):
        cfg = load_config(_write(tmp_path, """
bot_prefix: "?"
owner_ids: [100, "200"]
api_port: 9000
notify_channel: guild_events
optional:
  premium:
    primary_guild_id: 500
    premium_role_id: "900"
"""))
        assert cfg.bot_prefix == "?"
        assert cfg.owner_ids == ("100", "200")
        assert cfg.api_port == 9000
        assert cfg.notify_channel == "guild_events"
        assert cfg.premium.primary_guild_id == "500"
        assert cfg.premium.enabled is True

    def test_defaults(self, tmp_path):
        cfg = load_config(_write(tmp_path, 'bot_prefix: "!"\n'))
        assert cfg.owner_ids == ()
        assert cfg.api_port == 8000
        assert cfg.notify_channel == DEFAULT_NOTIFY_CHANNEL
        assert cfg.premium.enabled is False

    def test_blank_premium_values_disable_feature(self, tmp_path):
        cfg = load_config(_write(tmp_path, """
bot_prefix: "!"
optional:
  premium:
    primary_guild_id: ""
    premium_role_id: ""
"""))
        assert cfg.premium.primary_guild_id is None
        assert cfg.premium.enabled is False

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "absent.yaml")

    def test_missing_required_key(self, tmp_path):
        with pytest.raises(KeyError):
            load_config(_write(tmp_path, "api_port: 8000\n"))
