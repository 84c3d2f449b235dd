from __future__ import annotations

import os
from pathlib import Path


def default_crelayd_dir() -> Path:
    override = os.environ.get("CRELAYD_HOME")
    if override:
        return Path(override)
    return Path.home() / ".crelayd"


def default_config_path() -> Path:
    return default_crelayd_dir() / "crelayd.toml"


def default_identity_path() -> Path:
    return default_crelayd_dir() / "relay_identity"


def default_store_path() -> Path:
    return default_crelayd_dir() / "store.toml"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        # Best-effort tightening; may fail on some filesystems.
        os.chmod(path, 0o700)
    except OSError:
        pass
