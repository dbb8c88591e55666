"""Tests for configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from feedsync.config import build_config, load_config


def _write_yaml(path: Path, payload: dict) -> None:
    path.write_text(yaml.safe_dump(payload), encoding="utf-8")


def test_load_config_merges_default_and_local(tmp_path, monkeypatch):
    config_dir = tmp_path / "config"
    config_dir.mkdir()

    default_payload = {
        "version": 1,
        "logging": {"level": "info"},
        "fetch": {
            "mode": "static",
            "static_usernames": ["alice"],
            "schedule": "*/5 * * * *",
            "max_per_user": 20,
        },
        "media_cache": {"ttl_days": 30, "priority_usernames": ["alice"]},
    }
    local_payload = {
        "logging": {"level": "warn"},
        "fetch": {"static_usernames": ["@Bob", "carol", "bob"], "concurrency": 5},
        "media_cache": {"max_disk_usage_mb": 512},
    }

    _write_yaml(config_dir / "default.yaml", default_payload)
    _write_yaml(config_dir / "local.yaml", local_payload)

    monkeypatch.chdir(tmp_path)

    config = load_config()

    assert config.logging.level == "warn"
    assert config.fetch.static_usernames == ["Bob", "carol"]
    assert config.fetch.concurrency == 5
    assert config.fetch.max_per_user == 20
    assert config.media_cache.ttl_days == 30
    assert config.media_cache.priority_usernames == ["alice"]
    assert config.media_cache.max_disk_bytes == 512 * 1024 * 1024
    assert [Path(entry).relative_to(Path.cwd()).as_posix() for entry in config.loaded_from] == [
        "config/default.yaml",
        "config/local.yaml",
    ]


def test_load_config_with_explicit_override(tmp_path, monkeypatch):
    config_dir = tmp_path / "config"
    config_dir.mkdir()

    _write_yaml(config_dir / "default.yaml", {"logging": {"level": "warn"}})
    _write_yaml(config_dir / "local.yaml", {"logging": {"level": "error"}})
    override_path = tmp_path / "extra.yaml"
    _write_yaml(override_path, {"fetch": {"mode": "dynamic"}, "tasks": {"retry_delay_seconds": 5}})

    monkeypatch.chdir(tmp_path)

    config = load_config(override_path)

    assert config.fetch.mode == "dynamic"
    assert config.logging.level == "info"
    assert config.tasks.retry_delay_seconds == 5
    assert config.tasks.stale_after_seconds == 600


def test_load_config_falls_back_to_packaged_default(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    config = load_config()

    assert config.loaded_from == ("feedsync.config:default.yaml",)
    assert config.storage.path == Path("feedsync.sqlite")
    assert config.fetch.schedule == "*/5 * * * *"
    assert config.media_cache.cleanup_schedule == "0 * * * *"
    assert config.media_cache.enabled
    assert config.upstream.bearer_token is None


def test_load_config_missing_explicit_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_load_config_rejects_non_mapping(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(path)


@pytest.mark.parametrize(
    "payload",
    [
        {"fetch": {"schedule": "every five minutes"}},
        {"fetch": {"schedule": ""}},
        {"fetch": {"static_usernames": ["not a handle!"]}},
        {"fetch": {"mode": "sometimes"}},
        {"fetch": {"max_per_user": 0}},
        {"media_cache": {"cleanup_schedule": "61 * * * *"}},
        {"media_cache": {"request_timeout_seconds": 0.5}},
        {"logging": {"level": "loud"}},
        {"unknown_section": {}},
    ],
)
def test_build_config_rejects_invalid_values(payload):
    with pytest.raises(ValueError, match="Invalid configuration"):
        build_config(payload)


def test_cron_expressions_are_normalized():
    config = build_config({"fetch": {"schedule": "  */10   *  * * *  "}})
    assert config.fetch.schedule == "*/10 * * * *"
