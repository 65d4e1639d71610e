"""
Runtime configuration for the relay and the client.

Values are resolved in three layers: dataclass defaults, the selected profile
from ``configs/profiles.yaml`` and finally ``PEERLINK_*`` environment
variables.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

CONFIG_DIR = Path(__file__).resolve().parent / "configs"
PROFILES_PATH = CONFIG_DIR / "profiles.yaml"

LOG = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when a profile cannot be resolved."""


@dataclass
class RelayConfig:
    host: str = "127.0.0.1"
    port: int = 3000
    path: str = "/rtc"
    queue_size: int = 256
    certfile: Optional[str] = None
    keyfile: Optional[str] = None


@dataclass
class ClientConfig:
    url: str = "ws://127.0.0.1:3000/rtc"
    name: str = "Anonymous"
    reconnect_delay: float = 1.0
    ice_servers: List[str] = field(default_factory=list)


def load_profiles(path: Optional[Path] = None) -> Dict[str, Any]:
    profiles_path = path or PROFILES_PATH
    try:
        with Path(profiles_path).open("r", encoding="utf-8") as handle:
            profiles = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        LOG.debug("No profiles file at %s; using defaults", profiles_path)
        return {}
    if not isinstance(profiles, dict):
        raise ConfigError(f"{profiles_path} must contain a mapping of profiles")
    return profiles


def _apply(target: Any, values: Mapping[str, Any]) -> None:
    known = {item.name: item for item in fields(target)}
    for key, value in values.items():
        if key not in known:
            LOG.warning("Ignoring unknown %s option '%s'", type(target).__name__, key)
            continue
        current = getattr(target, key)
        if isinstance(current, bool) or current is None or value is None:
            setattr(target, key, value)
        elif isinstance(current, int):
            setattr(target, key, int(value))
        elif isinstance(current, float):
            setattr(target, key, float(value))
        elif isinstance(current, list):
            setattr(target, key, list(value))
        else:
            setattr(target, key, str(value))


def _env_overrides(environ: Mapping[str, str]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    relay: Dict[str, Any] = {}
    client: Dict[str, Any] = {}
    if environ.get("PEERLINK_HOST"):
        relay["host"] = environ["PEERLINK_HOST"]
    if environ.get("PEERLINK_PORT"):
        relay["port"] = environ["PEERLINK_PORT"]
    if environ.get("PEERLINK_CERT"):
        relay["certfile"] = environ["PEERLINK_CERT"]
    if environ.get("PEERLINK_KEY"):
        relay["keyfile"] = environ["PEERLINK_KEY"]
    if environ.get("PEERLINK_URL"):
        client["url"] = environ["PEERLINK_URL"]
    return relay, client


def load_config(
    profile: str = "default",
    *,
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Tuple[RelayConfig, ClientConfig]:
    """
    Resolve the relay and client configuration for ``profile``.
    """

    profiles = load_profiles(path)
    if profiles and profile not in profiles:
        raise ConfigError(f"Unknown profile '{profile}'")
    selected = profiles.get(profile) or {}

    relay = RelayConfig()
    client = ClientConfig()
    _apply(relay, selected.get("relay") or {})
    _apply(client, selected.get("client") or {})

    relay_env, client_env = _env_overrides(os.environ if environ is None else environ)
    _apply(relay, relay_env)
    _apply(client, client_env)
    return relay, client
