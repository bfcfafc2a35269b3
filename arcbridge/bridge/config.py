from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Tuple

import yaml

from arcbridge.core.parameters import DEFAULT_CHANNEL_NAMES, DEFAULT_VALUES
from arcbridge.errors import ConfigError


@dataclass(slots=True)
class BridgeConfig:
    """Runtime settings for the Arc bridge (times in seconds)."""

    ports: List[str] = field(default_factory=list)
    baudrate: int = 115200
    channel_names: Tuple[str, ...] = DEFAULT_CHANNEL_NAMES
    initial_values: Tuple[float, ...] = DEFAULT_VALUES
    led_window: float = 0.05
    led_threshold: float = 0.02
    reconnect_delay: float = 3.0
    init_pacing: float = 0.1
    settle_delay: float = 0.5
    startup_delay: float = 1.0
    auto_connect: bool = True
    write_timeout: float = 1.0

    def validate(self) -> None:
        if len(self.channel_names) != 4:
            raise ConfigError("channel_names must list exactly 4 names")
        if len(set(self.channel_names)) != 4:
            raise ConfigError("channel_names must be unique")
        if len(self.initial_values) != 4:
            raise ConfigError("initial_values must list exactly 4 values")
        if any(not 0.0 <= v <= 1.0 for v in self.initial_values):
            raise ConfigError("initial_values must lie in [0, 1]")
        if self.baudrate <= 0:
            raise ConfigError("baudrate must be positive")
        for name in ("led_window", "led_threshold", "reconnect_delay", "init_pacing",
                     "settle_delay", "startup_delay", "write_timeout"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must not be negative")

    def merged(self, **overrides: Any) -> "BridgeConfig":
        """Return a copy with the non-None *overrides* applied (CLI options)."""
        cfg = replace(self, **{k: v for k, v in overrides.items() if v is not None})
        cfg.validate()
        return cfg


_FIELD_NAMES = {f.name for f in fields(BridgeConfig)}


def config_from_dict(raw: Dict[str, Any]) -> BridgeConfig:
    unknown = set(raw) - _FIELD_NAMES
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")
    try:
        cfg = BridgeConfig(
            ports=[str(p) for p in raw.get("ports", []) or []],
            baudrate=int(raw.get("baudrate", 115200)),
            channel_names=tuple(str(n) for n in raw.get("channel_names", DEFAULT_CHANNEL_NAMES)),
            initial_values=tuple(float(v) for v in raw.get("initial_values", DEFAULT_VALUES)),
            led_window=float(raw.get("led_window", 0.05)),
            led_threshold=float(raw.get("led_threshold", 0.02)),
            reconnect_delay=float(raw.get("reconnect_delay", 3.0)),
            init_pacing=float(raw.get("init_pacing", 0.1)),
            settle_delay=float(raw.get("settle_delay", 0.5)),
            startup_delay=float(raw.get("startup_delay", 1.0)),
            auto_connect=bool(raw.get("auto_connect", True)),
            write_timeout=float(raw.get("write_timeout", 1.0)),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid config value: {exc}") from exc
    cfg.validate()
    return cfg


def load_config(path: str | Path) -> BridgeConfig:
    """Parse a YAML/JSON config file into a validated config object."""

    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(file_path)

    text = file_path.read_text(encoding="utf-8")
    try:
        if file_path.suffix.lower() in {".yaml", ".yml"}:
            raw = yaml.safe_load(text)
        else:
            raw = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Cannot parse {file_path}: {exc}") from exc

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("Configuration must be an object/dict")
    return config_from_dict(raw)
