"""Runtime settings.

Sources, lowest precedence first: built-in defaults, a JSON config file
(``--config``), the ``WHISPERPAIR_IRK`` environment variable, command-line
flags.
"""

import json
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from .filters import FilterConfig, parse_irk
from .registry import DEFAULT_MAX_DEVICES

ENV_IRK = "WHISPERPAIR_IRK"

DEFAULTS: Dict[str, Any] = {
    "min_rssi": -80,
    "max_devices": DEFAULT_MAX_DEVICES,
    "name_pattern": r"Fast\s*Pair|Pixel|Galaxy Buds",
    "mac_prefixes": ["3C:5A:B4", "D4:3B:04"],
    "irks": [],
    "optimistic_actions": False,
}

_TYPES = {
    "min_rssi": int,
    "max_devices": int,
    "name_pattern": (str, type(None)),
    "mac_prefixes": list,
    "irks": list,
    "optimistic_actions": bool,
}


@dataclass
class Settings:
    filter: FilterConfig
    max_devices: int
    optimistic_actions: bool
    irk_source: Optional[str] = None


def load_config_file(path: str) -> Dict[str, Any]:
    """Read a JSON object of setting overrides.  Raises ValueError or OSError."""
    with open(path) as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"{path}: invalid JSON: {e}")
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a JSON object")

    unknown = sorted(set(data) - set(_TYPES))
    if unknown:
        raise ValueError(f"{path}: unknown setting(s): {', '.join(unknown)}")
    for key, value in data.items():
        # bool is an int subclass; don't let true/false pass as dBm
        if isinstance(value, bool) and _TYPES[key] is int:
            raise ValueError(f"{path}: '{key}' must be an integer")
        if not isinstance(value, _TYPES[key]):
            raise ValueError(f"{path}: '{key}' has the wrong type")
        if isinstance(value, list) and not all(isinstance(v, str) for v in value):
            raise ValueError(f"{path}: '{key}' must be a list of strings")
    return data


def read_irk_file(path: str) -> List[bytes]:
    """One hex IRK per line; blank lines and ``#`` comments are skipped."""
    irks: List[bytes] = []
    with open(path) as f:
        for line_num, raw_line in enumerate(f, 1):
            stripped = raw_line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            try:
                irks.append(parse_irk(stripped))
            except ValueError as e:
                raise ValueError(f"IRK file line {line_num}: {e}")
    if not irks:
        raise ValueError("IRK file contains no valid keys")
    return irks


def resolve_settings(args, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Merge defaults, config file, environment and parsed CLI *args*."""
    if environ is None:
        environ = os.environ
    values = dict(DEFAULTS)
    if getattr(args, "config", None):
        values.update(load_config_file(args.config))

    if args.min_rssi is not None:
        values["min_rssi"] = args.min_rssi
    if args.max_devices is not None:
        values["max_devices"] = args.max_devices
    if args.any_name:
        values["name_pattern"] = None
    elif args.name_filter is not None:
        values["name_pattern"] = args.name_filter
    if args.any_prefix:
        values["mac_prefixes"] = []
    elif args.prefix:
        values["mac_prefixes"] = args.prefix
    if args.optimistic_actions:
        values["optimistic_actions"] = True

    irk_source = "config" if values["irks"] else None
    irks = [parse_irk(k) for k in values["irks"]]
    if args.irk:
        irks, irk_source = [parse_irk(args.irk)], "--irk"
    elif args.irk_file:
        irks, irk_source = read_irk_file(args.irk_file), "--irk-file"
    elif environ.get(ENV_IRK):
        try:
            irks = [parse_irk(environ[ENV_IRK])]
        except ValueError as e:
            raise ValueError(f"{ENV_IRK} environment variable: {e}")
        irk_source = ENV_IRK

    if values["max_devices"] < 1:
        raise ValueError("max_devices must be at least 1")

    pattern = values["name_pattern"]
    if pattern is not None and not pattern.strip():
        pattern = None
    filter_config = FilterConfig.build(
        min_rssi=values["min_rssi"],
        name_pattern=pattern,
        mac_prefixes=values["mac_prefixes"],
        irks=irks,
    )

    return Settings(filter=filter_config,
                    max_devices=values["max_devices"],
                    optimistic_actions=values["optimistic_actions"],
                    irk_source=irk_source)
