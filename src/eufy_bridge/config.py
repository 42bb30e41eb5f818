"""Configuration management for the Eufy bridge."""
from __future__ import annotations

import math
import os
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Mapping

DEFAULT_WS_URL = "ws://localhost:3000"
DEFAULT_OUTPUT_DIR = Path("./local_files")
DEFAULT_API_SCHEMA = 21

DEFAULT_CONNECT_TIMEOUT_S = 10 * 60.0
DEFAULT_BACKOFF_DELAYS_S: tuple[float, ...] = (5.0, 10.0, 20.0, 40.0, 80.0)
DEFAULT_QUERY_RESPONSE_TIMEOUT_S = 30.0
DEFAULT_REQUEST_TIMEOUT_S = 15.0
DEFAULT_RECONNECT_FLOOR_S = 1.0
DEFAULT_RECONNECT_CEILING_S = 60.0
DEFAULT_WEBHOOK_TIMEOUT_S = 30.0
DEFAULT_MUX_TIMEOUT_S = 300.0

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigError(ValueError):
    """Raised when the bridge configuration is missing or invalid."""


def _positive(name: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be numeric") from exc
    if not math.isfinite(number) or number <= 0:
        raise ConfigError(f"{name} must be a positive finite value")
    return number


@dataclass(frozen=True, slots=True)
class BridgeConfig:
    """Runtime settings shared by every bridge component."""

    station_serial: str
    device_serial: str
    webhook_url: str
    ws_url: str = DEFAULT_WS_URL
    webhook_user: str | None = None
    webhook_password: str | None = None
    output_dir: Path = DEFAULT_OUTPUT_DIR
    api_schema: int = DEFAULT_API_SCHEMA
    captcha_host: str = "0.0.0.0"
    captcha_port: int = 8080
    ffmpeg_binary: str = "ffmpeg"
    retain_artifacts: bool = True
    connect_timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S
    backoff_delays_s: tuple[float, ...] = DEFAULT_BACKOFF_DELAYS_S
    query_response_timeout_s: float = DEFAULT_QUERY_RESPONSE_TIMEOUT_S
    request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S
    reconnect_floor_s: float = DEFAULT_RECONNECT_FLOOR_S
    reconnect_ceiling_s: float = DEFAULT_RECONNECT_CEILING_S
    webhook_timeout_s: float = DEFAULT_WEBHOOK_TIMEOUT_S
    mux_timeout_s: float = DEFAULT_MUX_TIMEOUT_S

    def __post_init__(self) -> None:
        for name in ("station_serial", "device_serial", "webhook_url", "ws_url"):
            value = getattr(self, name)
            cleaned = value.strip() if isinstance(value, str) else ""
            if not cleaned:
                raise ConfigError(f"{name} must be provided")
            object.__setattr__(self, name, cleaned)
        if not self.ws_url.startswith(("ws://", "wss://")):
            raise ConfigError("ws_url must use the ws:// or wss:// scheme")
        if not self.webhook_url.startswith(("http://", "https://")):
            raise ConfigError("webhook_url must use the http:// or https:// scheme")
        if self.api_schema < 1:
            raise ConfigError("api_schema must be a positive integer")
        if not (0 < self.captcha_port < 65536):
            raise ConfigError("captcha_port must be between 1 and 65535")
        object.__setattr__(self, "output_dir", Path(self.output_dir))
        for name in (
            "connect_timeout_s",
            "query_response_timeout_s",
            "request_timeout_s",
            "reconnect_floor_s",
            "reconnect_ceiling_s",
            "webhook_timeout_s",
            "mux_timeout_s",
        ):
            object.__setattr__(self, name, _positive(name, getattr(self, name)))
        if self.reconnect_ceiling_s < self.reconnect_floor_s:
            raise ConfigError("reconnect_ceiling_s must not be below reconnect_floor_s")
        delays = tuple(_positive("backoff_delays_s", delay) for delay in self.backoff_delays_s)
        if not delays:
            raise ConfigError("backoff_delays_s must contain at least one delay")
        object.__setattr__(self, "backoff_delays_s", delays)

    @property
    def webhook_auth(self) -> tuple[str, str] | None:
        if self.webhook_user is None or self.webhook_password is None:
            return None
        return (self.webhook_user, self.webhook_password)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["output_dir"] = str(self.output_dir)
        payload["backoff_delays_s"] = list(self.backoff_delays_s)
        if payload.get("webhook_password") is not None:
            payload["webhook_password"] = "***"
        return payload

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "BridgeConfig":
        """Build a configuration from environment variables."""

        env = os.environ if environ is None else environ
        missing = [
            name
            for name in ("HOMEBASE_SN", "DOORBELL_SN", "N8N_WEBHOOK_URL")
            if not (env.get(name) or "").strip()
        ]
        if missing:
            raise ConfigError(f"Missing {', '.join(missing)}")

        kwargs: dict[str, Any] = {
            "station_serial": env["HOMEBASE_SN"],
            "device_serial": env["DOORBELL_SN"],
            "webhook_url": env["N8N_WEBHOOK_URL"],
            "ws_url": env.get("EUFY_WS_URL") or DEFAULT_WS_URL,
            "webhook_user": env.get("N8N_WEBHOOK_USER") or None,
            "webhook_password": env.get("N8N_WEBHOOK_PASSWORD") or None,
            "output_dir": Path(env.get("OUTPUT_DIR") or DEFAULT_OUTPUT_DIR),
            "captcha_host": env.get("CAPTCHA_HOST") or "0.0.0.0",
            "ffmpeg_binary": env.get("FFMPEG_BINARY") or "ffmpeg",
        }
        for name, key in (("api_schema", "API_SCHEMA"), ("captcha_port", "CAPTCHA_PORT")):
            raw = env.get(key)
            if raw:
                try:
                    kwargs[name] = int(raw)
                except ValueError as exc:
                    raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc
        retain = env.get("RETAIN_ARTIFACTS")
        if retain:
            lowered = retain.strip().lower()
            if lowered in _TRUE_VALUES:
                kwargs["retain_artifacts"] = True
            elif lowered in _FALSE_VALUES:
                kwargs["retain_artifacts"] = False
            else:
                raise ConfigError(f"RETAIN_ARTIFACTS must be a boolean, got {retain!r}")
        return cls(**kwargs)


__all__ = ["BridgeConfig", "ConfigError"]
