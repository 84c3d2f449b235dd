from __future__ import annotations

from dataclasses import asdict, dataclass, replace


@dataclass(frozen=True)
class RelayRuntimeConfig:
    config_path: str | None = None
    store_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    dest_name: str = "crelay.hub"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "crelay"
    max_identity_chars: int = 64
    max_display_name_chars: int = 64
    max_group_name_chars: int = 64
    max_group_members: int = 256
    max_content_chars: int = 4096
    rate_limit_msgs_per_minute: int = 240
    enable_resource_transfer: bool = True
    max_resource_bytes: int = 256 * 1024  # 256 KiB default
    max_pending_resource_expectations: int = 8
    resource_expectation_ttl_s: float = 30.0
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


_LOGGING_KEYS = {
    "level": "log_level",
    "rns_level": "log_rns_level",
    "console": "log_console",
    "file": "log_file",
    "format": "log_format",
    "datefmt": "log_datefmt",
}


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(base: RelayRuntimeConfig, data: dict) -> RelayRuntimeConfig:
    """Overlay parsed TOML data onto ``base``.

    Keys may live at the top level or under ``[relay]``; logging options
    live under ``[logging]``. Unknown keys are ignored.
    """
    relay = data.get("relay") if isinstance(data, dict) else None
    if isinstance(relay, dict):
        data = {**data, **relay}

    log_table = data.get("logging") if isinstance(data, dict) else None
    if isinstance(log_table, dict):
        mapped = {
            target: log_table.get(source)
            for source, target in _LOGGING_KEYS.items()
            if source in log_table
        }
        data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where the config came from; do not let the file override it.
    allowed.discard("config_path")

    updates = {k: v for k, v in data.items() if k in allowed}

    if "announce" in data and "announce_on_start" not in updates:
        updates["announce_on_start"] = bool(data["announce"])
    for optional_key in ("configdir", "store_path", "log_file", "log_datefmt"):
        if optional_key in updates and updates[optional_key] == "":
            updates[optional_key] = None

    return replace(base, **updates) if updates else base
