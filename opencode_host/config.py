"""Host identity persistence and runtime settings."""

from __future__ import annotations

import base64
import json
import os
import re
import secrets
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .errors import ConfigError


VERSION = "1.0.0"

PROD_CONVEX_URL = "https://utmost-wren-887.convex.cloud"
DEV_CONVEX_URL = "https://intent-chinchilla-833.convex.cloud"
DEPLOYMENTS = {"prod": PROD_CONVEX_URL, "dev": DEV_CONVEX_URL}

DEFAULT_PORT_RANGE = (4096, 8192)
DEFAULT_IDLE_TIMEOUT_MS = 60_000
DEFAULT_HEARTBEAT_INTERVAL_MS = 30_000


def _env_float(name: str, default: float) -> float:
    raw = (os.environ.get(name, "") or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def default_config_dir() -> Path:
    override = (os.environ.get("OPENCODE_HOST_CONFIG_DIR", "") or "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "opencode-host"


def generate_host_id() -> str:
    return str(secrets.randbelow(10_000_000_000)).zfill(10)


def generate_one_time_code() -> str:
    return str(secrets.randbelow(1_000_000)).zfill(6)


def generate_secret() -> str:
    return base64.b64encode(secrets.token_bytes(32)).decode("ascii")


def format_host_id(host_id: str) -> str:
    """Format a 10-digit host id for display: ``123 456 7890``."""
    digits = re.sub(r"\D", "", host_id)
    if len(digits) != 10:
        return host_id
    return f"{digits[:3]} {digits[3:6]} {digits[6:]}"


@dataclass(frozen=True)
class HostIdentity:
    host_id: str
    jwt_secret: str
    opencode_path: str = "opencode"
    port_min: int = DEFAULT_PORT_RANGE[0]
    port_max: int = DEFAULT_PORT_RANGE[1]
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT_MS / 1000
    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL_MS / 1000
    base_path: Path = field(default_factory=lambda: Path.home() / "Documents")
    convex_url: str = PROD_CONVEX_URL

    def to_json(self) -> dict[str, Any]:
        return {
            "hostId": self.host_id,
            "convexUrl": self.convex_url,
            "jwtSecret": self.jwt_secret,
            "opencodePath": self.opencode_path,
            "portRange": {"min": self.port_min, "max": self.port_max},
            "inactivityTimeoutMs": int(self.idle_timeout * 1000),
            "heartbeatIntervalMs": int(self.heartbeat_interval * 1000),
            "basePath": str(self.base_path),
        }

    @classmethod
    def from_json(cls, stored: dict[str, Any]) -> tuple["HostIdentity", bool]:
        """Build an identity from a stored record, filling gaps from defaults.

        Returns the identity and whether any field had to be filled in.
        """
        filled = False

        def pick(key: str, fallback: Any) -> Any:
            nonlocal filled
            value = stored.get(key)
            if value in (None, "", {}):
                filled = True
                return fallback() if callable(fallback) else fallback
            return value

        port_range = pick("portRange", {"min": DEFAULT_PORT_RANGE[0], "max": DEFAULT_PORT_RANGE[1]})
        try:
            port_min = int(port_range["min"])
            port_max = int(port_range["max"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid portRange in host config: {port_range!r}") from exc
        if not (0 < port_min <= port_max <= 65535):
            raise ConfigError(f"Invalid portRange in host config: {port_min}-{port_max}")

        identity = cls(
            host_id=str(pick("hostId", generate_host_id)),
            jwt_secret=str(pick("jwtSecret", generate_secret)),
            opencode_path=str(pick("opencodePath", "opencode")),
            port_min=port_min,
            port_max=port_max,
            idle_timeout=float(pick("inactivityTimeoutMs", DEFAULT_IDLE_TIMEOUT_MS)) / 1000,
            heartbeat_interval=float(pick("heartbeatIntervalMs", DEFAULT_HEARTBEAT_INTERVAL_MS)) / 1000,
            base_path=Path(str(pick("basePath", lambda: str(Path.home() / "Documents")))).expanduser(),
            convex_url=str(pick("convexUrl", PROD_CONVEX_URL)),
        )
        return identity, filled


def _write_identity(path: Path, identity: HostIdentity) -> None:
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(identity.to_json(), indent=2), encoding="utf-8")
    os.chmod(tmp, 0o600)
    tmp.replace(path)


def load_or_create_identity(config_dir: Path | None = None) -> tuple[HostIdentity, bool]:
    """Read the persisted identity, creating it on first run.

    Returns the identity and True when a new config file was written.
    """
    config_dir = config_dir or default_config_dir()
    config_file = config_dir / "config.json"
    try:
        config_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigError(f"Cannot create config directory {config_dir}: {exc}") from exc

    if config_file.exists():
        try:
            stored = json.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Cannot read host config {config_file}: {exc}") from exc
        if not isinstance(stored, dict):
            raise ConfigError(f"Host config {config_file} is not a JSON object")
        identity, filled = HostIdentity.from_json(stored)
        if filled:
            _write_identity(config_file, identity)
        return identity, False

    identity = HostIdentity(
        host_id=generate_host_id(),
        jwt_secret=generate_secret(),
        convex_url=os.environ.get("CONVEX_URL") or PROD_CONVEX_URL,
    )
    try:
        _write_identity(config_file, identity)
    except OSError as exc:
        raise ConfigError(f"Cannot write host config {config_file}: {exc}") from exc
    return identity, True


def resolve_convex_url(dev: bool = False) -> str:
    override = (os.environ.get("CONVEX_URL", "") or "").strip()
    if override:
        return override
    return DEPLOYMENTS["dev" if dev else "prod"]


def with_queue_url(identity: HostIdentity, dev: bool = False) -> HostIdentity:
    return replace(identity, convex_url=resolve_convex_url(dev))


@dataclass(frozen=True)
class RuntimeSettings:
    startup_timeout: float = 30.0
    health_interval: float = 0.5
    health_path: str = "/global/health"
    stop_grace: float = 5.0
    reap_interval: float = 10.0
    relay_timeout: float = 180.0
    tool_wait_timeout: float = 300.0
    tool_poll_interval: float = 0.5
    push_interval: float = 0.15
    request_poll_interval: float = 0.5
    refresh_grace: float = 24 * 60 * 60
    credential_ttl: float = 30 * 24 * 60 * 60

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        defaults = cls()
        health_path = (os.environ.get("OPENCODE_HOST_HEALTH_PATH", "") or "").strip() or defaults.health_path
        if not health_path.startswith("/"):
            health_path = "/" + health_path
        return cls(
            startup_timeout=_env_float("OPENCODE_HOST_STARTUP_TIMEOUT", defaults.startup_timeout),
            health_interval=_env_float("OPENCODE_HOST_HEALTH_INTERVAL", defaults.health_interval),
            health_path=health_path,
            stop_grace=_env_float("OPENCODE_HOST_STOP_GRACE", defaults.stop_grace),
            reap_interval=_env_float("OPENCODE_HOST_REAP_INTERVAL", defaults.reap_interval),
            relay_timeout=_env_float("OPENCODE_HOST_RELAY_TIMEOUT", defaults.relay_timeout),
            tool_wait_timeout=_env_float("OPENCODE_HOST_TOOL_WAIT", defaults.tool_wait_timeout),
            tool_poll_interval=_env_float("OPENCODE_HOST_TOOL_POLL", defaults.tool_poll_interval),
            push_interval=_env_float("OPENCODE_HOST_PUSH_INTERVAL", defaults.push_interval),
            request_poll_interval=_env_float("OPENCODE_HOST_REQUEST_POLL", defaults.request_poll_interval),
        )
