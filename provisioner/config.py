"""Relay configuration.

Values come from (lowest precedence first) dataclass defaults, an optional
JSON file and environment variables. Command-line flags in
:mod:`provisioner.server` override all of them.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

_HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{32}$")

# Key name → environment variable
_SECURITY_KEY_ENV = {
    "S2_Unauthenticated": "ZWAVE_S2_UNAUTHENTICATED_KEY",
    "S2_Authenticated": "ZWAVE_S2_AUTHENTICATED_KEY",
    "S2_AccessControl": "ZWAVE_S2_ACCESS_CONTROL_KEY",
    "S0_Legacy": "ZWAVE_S0_LEGACY_KEY",
}
_SECURITY_KEY_LR_ENV = {
    "S2_Authenticated": "ZWAVE_LR_S2_AUTHENTICATED_KEY",
    "S2_AccessControl": "ZWAVE_LR_S2_ACCESS_CONTROL_KEY",
}


@dataclass
class Settings:
    """Relay settings, loaded from config.json and the environment."""

    host: str = "0.0.0.0"
    port: int = 3001

    # Upstream driver endpoint (zwave-js-server URL)
    zwave_port: str = "ws://localhost:3000"
    ready_timeout: float = 30.0

    # Directory the driver reads priority device configs from
    device_config_dir: str = "./store/device-configs"

    log_level: str = "INFO"

    # Key name → 32 hex characters
    security_keys: dict = field(default_factory=dict)
    security_keys_long_range: dict = field(default_factory=dict)

    @classmethod
    def load(cls, path: str | Path) -> Settings:
        path = Path(path)
        if path.exists():
            with open(path) as f:
                data = json.load(f)
            known = {k for k in cls.__dataclass_fields__}
            filtered = {k: v for k, v in data.items() if k in known}
            settings = cls(**filtered)
        else:
            logger.warning("Config not found at %s, using defaults", path)
            settings = cls()
        settings.security_keys = validate_security_keys(settings.security_keys)
        settings.security_keys_long_range = validate_security_keys(
            settings.security_keys_long_range, label="Long Range"
        )
        return settings

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> Settings:
        """Build settings from ``PROVISIONER_CONFIG`` (if set) plus env overrides."""
        env = os.environ if environ is None else environ
        config_path = env.get("PROVISIONER_CONFIG")
        settings = cls.load(config_path) if config_path else cls()

        settings.host = env.get("PROVISIONER_HOST", settings.host)
        settings.port = int(env.get("PROVISIONER_PORT", settings.port))
        settings.zwave_port = env.get("ZWAVE_PORT", settings.zwave_port)
        settings.device_config_dir = env.get(
            "PROVISIONER_DEVICE_CONFIG_DIR", settings.device_config_dir
        )
        settings.ready_timeout = float(
            env.get("PROVISIONER_READY_TIMEOUT", settings.ready_timeout)
        )
        settings.log_level = env.get("PROVISIONER_LOG_LEVEL", settings.log_level)

        keys = dict(settings.security_keys)
        for name, var in _SECURITY_KEY_ENV.items():
            if env.get(var):
                keys[name] = env[var]
        keys_lr = dict(settings.security_keys_long_range)
        for name, var in _SECURITY_KEY_LR_ENV.items():
            if env.get(var):
                keys_lr[name] = env[var]
        settings.security_keys = validate_security_keys(keys)
        settings.security_keys_long_range = validate_security_keys(keys_lr, label="Long Range")
        return settings

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(dict(self.__dict__), f, indent=2)


def validate_security_keys(keys: dict, label: str = "standard") -> dict[str, str]:
    """Keep only keys that decode to 16 bytes; warn about the rest."""
    valid: dict[str, str] = {}
    for name, value in (keys or {}).items():
        if isinstance(value, str) and _HEX_KEY_RE.match(value):
            valid[name] = value.upper()
        else:
            logger.warning(
                "Security key %s (%s) is invalid: expected 32 hex characters", name, label
            )
    if not valid:
        logger.warning("No security keys configured for %s Z-Wave", label)
    return valid
