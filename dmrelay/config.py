from __future__ import annotations

import os
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

from .constants import ROUTER_QUEUE_SIZE


@dataclass(frozen=True)
class RelayRuntimeConfig:
    config_path: str | None = None
    listen_host: str = "0.0.0.0"
    listen_port: int = 0
    queue_size: int = ROUTER_QUEUE_SIZE
    handshake_timeout_s: float = 10.0
    console: bool = True
    log_level: str = "INFO"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


def default_config_path() -> Path:
    """``$DMRELAY_HOME/dmrelay.toml``, falling back to ``~/.dmrelay/dmrelay.toml``."""

    home = os.environ.get("DMRELAY_HOME")
    base = Path(home) if home else Path.home() / ".dmrelay"
    return base / "dmrelay.toml"


def load_toml(path: str) -> dict:
    import tomllib

    with open(os.path.expanduser(path), "rb") as f:
        return tomllib.load(f)


def apply_config_data(cfg: RelayRuntimeConfig, data: dict[str, Any]) -> RelayRuntimeConfig:
    """Merge a parsed TOML document into ``cfg``.

    Keys may live at top level or under ``[relay]``; the ``[logging]`` table
    maps onto the ``log_*`` fields. Unknown keys are ignored.
    """

    relay = data.get("relay") if isinstance(data, dict) else None
    if isinstance(relay, dict):
        data = {**data, **relay}

    log_table = data.get("logging") if isinstance(data, dict) else None
    if isinstance(log_table, dict):
        mapped: dict[str, object] = {}
        for key in ("level", "console", "file", "format", "datefmt"):
            if key in log_table:
                mapped[f"log_{key}"] = log_table.get(key)
        data = {**data, **mapped}

    allowed = set(asdict(cfg).keys())
    # This identifies where the config came from; do not let the file override it.
    allowed.discard("config_path")
    updates = {k: v for k, v in data.items() if k in allowed}

    if "log_file" in updates and updates["log_file"] == "":
        updates["log_file"] = None
    if "log_datefmt" in updates and updates["log_datefmt"] == "":
        updates["log_datefmt"] = None

    for int_key in ("listen_port", "queue_size"):
        if int_key in updates:
            updates[int_key] = int(updates[int_key])
    if "handshake_timeout_s" in updates:
        updates["handshake_timeout_s"] = float(updates["handshake_timeout_s"])

    return replace(cfg, **updates) if updates else cfg
