"""
Envelope Configuration
Routing, patient and security settings supplied by the sender.

The configuration is plain JSON (see examples/sample_config.json).
Nothing here reads process-wide state except schema_path_from_env(),
which only the example scripts call.
"""

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path

from jmix.errors import ConfigError

SCHEMA_PATH_ENV = "JMIX_SCHEMA_PATH"

_REQUIRED = ("version", "sender", "receivers", "patient", "security")


@dataclass
class EnvelopeConfig:
    """Sender-supplied settings for one envelope."""
    version: str
    sender: dict
    receivers: list[dict]
    patient: dict
    security: dict = field(default_factory=lambda: {"classification": "confidential"})
    requester: dict | None = None
    consent: dict | None = None
    custom_tags: list[str] | None = None
    report: dict | None = None
    deid_keys: list[str] | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "EnvelopeConfig":
        if not isinstance(data, dict):
            raise ConfigError("Configuration must be a JSON object")
        missing = [key for key in _REQUIRED if key not in data]
        if missing:
            raise ConfigError(f"Configuration is missing required fields: {', '.join(missing)}")
        if not isinstance(data["receivers"], list):
            raise ConfigError("Configuration field 'receivers' must be a list")
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)
                if getattr(self, f.name) is not None}


def load_config(path: str | Path) -> EnvelopeConfig:
    """
    Load an envelope configuration from a JSON file.

    Raises:
        ConfigError: If the file cannot be read or parsed.
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigError(f"Failed to load configuration: {e}", path) from e
    return EnvelopeConfig.from_dict(data)


def schema_path_from_env() -> Path | None:
    """Schema directory from JMIX_SCHEMA_PATH, if set."""
    value = os.environ.get(SCHEMA_PATH_ENV)
    return Path(value) if value else None
