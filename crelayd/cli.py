from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path

import RNS

from .config import RelayRuntimeConfig, apply_config_data, load_toml
from .logging_config import configure_logging
from .paths import (
    default_config_path,
    default_identity_path,
    default_store_path,
    ensure_private_dir,
)
from .service import RelayService


def _write_default_config(config_path: str, identity_path: str, store_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    storage_dir = os.path.dirname(identity_path)
    if storage_dir:
        ensure_private_dir(Path(storage_dir))

    content = f"""# crelayd configuration (TOML)
#
# This file was created on first run.
# Edit it, then start crelayd again.

[relay]

# Optional: Reticulum configuration directory.
# If left unset, Reticulum will choose its default (usually ~/.reticulum).
configdir = ""

# Where crelayd stores its persistent identity (Reticulum Identity file).
identity_path = {identity_path!r}

# Contacts, groups and message history (TOML, rewritten on every change).
# Leave empty to keep everything in memory only.
store_path = {store_path!r}

# Destination name to host the relay on.
dest_name = "crelay.hub"

# Announcing (Reticulum destination announces)
#
# announce_on_start: send a single announce right after startup.
# announce_period_s: if >0, periodically re-announce.
announce_on_start = true
announce_period_s = 0.0

# Relay name reported in the welcome event.
hub_name = "crelay"

# Limits (Unicode characters unless noted). 0 disables a limit.
max_identity_chars = 64
max_display_name_chars = 64
max_group_name_chars = 64
max_group_members = 256
max_content_chars = 4096
rate_limit_msgs_per_minute = 240

# Large payload transfer via RNS.Resource
#
# Snapshots and history replies rarely fit in one packet. Those are sent
# as an RNS.Resource, preceded by a small resource-envelope event.
# Clients may do the same; inbound resources are only accepted when
# announced first, and their SHA-256 is verified.
enable_resource_transfer = true
max_resource_bytes = 262144
max_pending_resource_expectations = 8
resource_expectation_ttl_s = 30.0

[logging]

# Log level for crelayd itself.
level = "INFO"

# Log level for Reticulum/RNS Python logging (if used by your install).
rns_level = "WARNING"

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable).
file = ""

# Log format and optional date format.
format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)


def _ensure_first_run_files(
    config_path: str, identity_path: str, store_path: str
) -> bool:
    created_any = False

    if not os.path.exists(config_path):
        _write_default_config(config_path, identity_path, store_path)
        created_any = True

    if not os.path.exists(identity_path):
        storage_dir = os.path.dirname(identity_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        ident = RNS.Identity()
        ident.to_file(identity_path)
        try:
            os.chmod(identity_path, 0o600)
        except OSError:
            pass
        created_any = True

    if store_path and not os.path.exists(store_path):
        storage_dir = os.path.dirname(store_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        content = """# crelayd store (TOML)
#
# Contacts, groups and messages. This file is rewritten by crelayd after
# every change; stop the relay before editing it by hand.
#
# Schema
# ------
#
# [contacts.<id>]    peers (two identities), invite_code, created_ts,
#                    names (identity -> name shown for the peer)
# [groups.<id>]      name, creator, members, created_ts
# [[messages]]       id, sender, target, content, timestamp, is_group
"""
        with open(store_path, "w", encoding="utf-8") as f:
            f.write(content)
        try:
            os.chmod(store_path, 0o600)
        except OSError:
            pass
        created_any = True

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="crelayd", description="Run a chat relay daemon")

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")

    p.add_argument(
        "--identity",
        default=str(default_identity_path()),
        help="Path to relay identity file (created on first run)",
    )
    p.add_argument(
        "--store",
        default=None,
        help="Path to the TOML store (default comes from config)",
    )
    p.add_argument(
        "--dest-name", default=None, help="Destination app name (default: crelay.hub)"
    )

    p.add_argument(
        "--no-announce",
        action="store_true",
        help="Disable announce on start (does not affect periodic announce)",
    )
    p.add_argument(
        "--announce-period",
        type=float,
        default=None,
        help="Periodic announce interval seconds (0 disables)",
    )

    p.add_argument("--hub-name", default=None, help="Relay name in the welcome event")

    p.add_argument(
        "--rate-limit-msgs-per-minute",
        type=int,
        default=None,
        help="Per-link message rate limit",
    )

    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    return p


def build_config(args: argparse.Namespace) -> RelayRuntimeConfig:
    """Defaults, then the config file, then command line overrides."""
    config_path = str(args.config)

    cfg = RelayRuntimeConfig(
        config_path=config_path,
        configdir=args.configdir,
        identity_path=str(args.identity),
    )
    if config_path and os.path.exists(config_path):
        cfg = apply_config_data(cfg, load_toml(config_path))

    if args.configdir is not None:
        cfg = replace(cfg, configdir=args.configdir)
    if args.store is not None:
        cfg = replace(cfg, store_path=str(args.store) or None)
    if args.dest_name is not None:
        cfg = replace(cfg, dest_name=args.dest_name)

    if args.no_announce:
        cfg = replace(cfg, announce_on_start=False)
    if args.announce_period is not None:
        cfg = replace(cfg, announce_period_s=float(args.announce_period))

    if args.hub_name is not None:
        cfg = replace(cfg, hub_name=args.hub_name)
    if args.rate_limit_msgs_per_minute is not None:
        cfg = replace(
            cfg, rate_limit_msgs_per_minute=int(args.rate_limit_msgs_per_minute)
        )

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    return cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    identity_path = str(args.identity)
    store_path = str(args.store) if args.store else str(default_store_path())

    if _ensure_first_run_files(config_path, identity_path, store_path):
        print(
            "Created default crelayd files. Edit the configuration before starting:\n"
            f"- Config:   {config_path}\n"
            f"- Identity: {identity_path}\n"
            f"- Store:    {store_path}\n"
            "\nThen re-run crelayd.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = build_config(args)

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = RelayService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()
