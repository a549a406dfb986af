"""
Node configuration parameters for roomchat.

Defines listen addresses, timeouts and operational limits. Values can be
overridden from the environment (``ROOMCHAT_*``) or a ``.env`` file.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import dotenv_values


ENV_PREFIX = "ROOMCHAT_"

DEFAULT_LISTEN_ADDRS = ["/ip4/0.0.0.0/tcp/4001"]


@dataclass
class NodeConfig:
    """Configuration for a chat node"""

    # Transport
    listen_addrs: List[str] = field(default_factory=lambda: list(DEFAULT_LISTEN_ADDRS))
    dial_timeout: float = 10.0  # seconds for TCP connect + handshake
    handshake_timeout: float = 10.0  # seconds for inbound handshakes
    max_frame_size: int = 1024 * 1024  # 1 MiB per frame

    # Connections
    max_peers: int = 50
    ping_interval: float = 30.0
    idle_timeout: float = 90.0  # close if nothing heard for this long

    # Pub/sub
    dedup_window_size: int = 1024  # recently seen messages kept for dedup
    max_message_length: int = 64 * 1024  # characters of chat content
    max_room_name_length: int = 256

    # Discovery
    bootstrap_peers: List[str] = field(default_factory=list)
    enable_discovery: bool = True
    discovery_interval: float = 30.0
    max_discovery_dials: int = 8  # concurrent automatic dials
    enable_mdns: bool = False  # LAN announce and browse via zeroconf

    # Identity
    identity_path: Optional[Path] = None  # None keeps the identity ephemeral

    # Front-end refresh cadence for node info polling
    poll_interval: float = 5.0

    def __post_init__(self):
        """Validate limits"""
        for name in (
            "dial_timeout",
            "handshake_timeout",
            "ping_interval",
            "idle_timeout",
            "discovery_interval",
            "poll_interval",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        for name in (
            "max_frame_size",
            "max_peers",
            "dedup_window_size",
            "max_message_length",
            "max_room_name_length",
            "max_discovery_dials",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")
        if self.idle_timeout <= self.ping_interval:
            raise ValueError("idle_timeout must exceed ping_interval")
        if self.identity_path is not None:
            self.identity_path = Path(self.identity_path).expanduser()


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _coerce(name: str, raw: str, default):
    if name in ("listen_addrs", "bootstrap_peers"):
        return _parse_list(raw)
    if name == "identity_path":
        return Path(raw) if raw else None
    if isinstance(default, bool):
        return _parse_bool(raw)
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


def load_config(env_file: Optional[str] = None, **overrides) -> NodeConfig:
    """
    Load configuration from a .env file and the process environment.

    Precedence (highest first): keyword overrides, process environment,
    .env file, dataclass defaults.

    Args:
        env_file: Optional path to a .env file
        **overrides: NodeConfig fields set directly

    Returns:
        NodeConfig instance
    """
    values: Dict[str, Optional[str]] = {}
    if env_file:
        values.update(dotenv_values(env_file))
    values.update({k: v for k, v in os.environ.items() if k.startswith(ENV_PREFIX)})

    defaults = NodeConfig()
    kwargs = {}
    for f in fields(NodeConfig):
        raw = values.get(ENV_PREFIX + f.name.upper())
        if raw is None:
            continue
        kwargs[f.name] = _coerce(f.name, raw, getattr(defaults, f.name))

    kwargs.update(overrides)
    return NodeConfig(**kwargs)
