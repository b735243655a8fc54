from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Mapping

_ENV_PREFIX = "NEXSY_"


def _env_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class GatewayConfig:
    host: str = "127.0.0.1"
    port: int = 5000
    db_path: str | None = None
    ping_interval_s: int = 25
    ping_miss_limit: int = 2
    max_msg_size: int = 1_048_576
    outbound_queue_size: int = 1000
    session_ttl_s: int = 7 * 24 * 60 * 60
    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "GatewayConfig":
        """Build a config from ``NEXSY_*`` variables; ``PORT`` is a fallback for the port."""

        environ = os.environ if environ is None else environ
        values: dict[str, object] = {}
        if environ.get("PORT"):
            values["port"] = int(environ["PORT"])
        for item in fields(cls):
            raw = environ.get(_ENV_PREFIX + item.name.upper())
            if raw is None or raw == "":
                continue
            default = getattr(cls, item.name)
            if isinstance(default, bool):
                values[item.name] = _env_bool(raw)
            elif isinstance(default, int):
                values[item.name] = int(raw)
            else:
                values[item.name] = raw
        return cls(**values)

    def override(self, **changes: object) -> "GatewayConfig":
        return replace(self, **{key: value for key, value in changes.items() if value is not None})
