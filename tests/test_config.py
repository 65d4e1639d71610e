"""Tests covering profile loading and environment overrides."""

from __future__ import annotations

from pathlib import Path

import pytest

from peerlink.config import ConfigError, RelayConfig, load_config, load_profiles


def test_default_profile_matches_dataclass_defaults() -> None:
    relay, client = load_config("default", environ={})

    assert relay == RelayConfig()
    assert client.url == "ws://127.0.0.1:3000/rtc"
    assert client.name == "Anonymous"
    assert client.reconnect_delay == 1.0


def test_lan_profile_overrides() -> None:
    relay, client = load_config("lan", environ={})

    assert relay.host == "0.0.0.0"
    assert relay.queue_size == 512
    assert client.reconnect_delay == 2.0


def test_environment_overrides_profile() -> None:
    relay, client = load_config(
        "default",
        environ={
            "PEERLINK_HOST": "10.0.0.5",
            "PEERLINK_PORT": "4443",
            "PEERLINK_CERT": "/tmp/cert.pem",
            "PEERLINK_KEY": "/tmp/key.pem",
            "PEERLINK_URL": "wss://relay.example.com/rtc",
        },
    )

    assert relay.host == "10.0.0.5"
    assert relay.port == 4443
    assert relay.certfile == "/tmp/cert.pem"
    assert relay.keyfile == "/tmp/key.pem"
    assert client.url == "wss://relay.example.com/rtc"


def test_unknown_profile_is_an_error() -> None:
    with pytest.raises(ConfigError):
        load_config("staging", environ={})


def test_custom_profiles_file(tmp_path: Path) -> None:
    path = tmp_path / "profiles.yaml"
    path.write_text(
        "test:\n"
        "  relay:\n"
        "    port: '9000'\n"
        "    bogus: 1\n"
        "  client:\n"
        "    ice_servers: ['stun:stun.example.com:3478']\n",
        encoding="utf-8",
    )

    relay, client = load_config("test", path=path, environ={})

    assert relay.port == 9000
    assert client.ice_servers == ["stun:stun.example.com:3478"]


def test_missing_profiles_file_falls_back_to_defaults(tmp_path: Path) -> None:
    assert load_profiles(tmp_path / "missing.yaml") == {}
    relay, _ = load_config("anything", path=tmp_path / "missing.yaml", environ={})
    assert relay == RelayConfig()


def test_profiles_must_be_a_mapping(tmp_path: Path) -> None:
    path = tmp_path / "profiles.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_profiles(path)
