"""
Configuration management for zotero-bridge.

The configuration is stored as a TOML file in the user's config directory.
It locates the Zotero database and tunes the write-safety guard.
Environment variables override file values.
"""

import os
import platform
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import tomli_w


CONFIG_FILENAME = "zotero-bridge.toml"
CONFIG_VERSION = 1

DB_FILENAME = "zotero.sqlite"
BACKUP_DIRNAME = "zotero-bridge-backups"

DEFAULT_OWNER_PROCESS_NAMES = ("zotero", "zotero.exe", "zotero-bin")
DEFAULT_LOCK_SUFFIXES = ("-journal", "-wal", ".lock")


def get_config_dir() -> Path:
    """Directory holding the config file (ZOTERO_BRIDGE_CONFIG_DIR overrides)."""
    override = os.environ.get("ZOTERO_BRIDGE_CONFIG_DIR")
    if override:
        return Path(override)
    if platform.system() == "Windows":
        base = os.environ.get("APPDATA")
        if base:
            return Path(base) / "zotero-bridge"
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "zotero-bridge"
    return Path.home() / ".config" / "zotero-bridge"


def _candidate_db_paths() -> list[Path]:
    """Conventional database locations for the current OS, most likely first."""
    home = Path.home()
    candidates = [home / "Zotero" / DB_FILENAME]
    system = platform.system()
    if system == "Windows":
        appdata = os.environ.get("APPDATA")
        if appdata:
            candidates.append(Path(appdata) / "Zotero" / "Zotero" / "Profiles")
    elif system == "Darwin":
        candidates.append(home / "Library" / "Application Support" / "Zotero" / "Profiles")
    else:
        candidates.append(home / ".zotero" / "zotero")
    return candidates


def default_db_path() -> Path:
    """
    Find the Zotero database in its conventional location.

    Profile directories are searched one level deep for a data directory
    containing zotero.sqlite. Falls back to ~/Zotero/zotero.sqlite.
    """
    for candidate in _candidate_db_paths():
        if candidate.name == DB_FILENAME:
            if candidate.is_file():
                return candidate
            continue
        if candidate.is_dir():
            for db in sorted(candidate.glob(f"*/{DB_FILENAME}")):
                return db
    return Path.home() / "Zotero" / DB_FILENAME


@dataclass
class BridgeConfig:
    """Complete bridge configuration."""
    db_path: Path = field(default_factory=default_db_path)
    readonly: bool = False
    # Save after every top-level mutation (otherwise only on disconnect)
    autosave: bool = True
    backup_dir: Optional[Path] = None
    owner_process_names: tuple[str, ...] = DEFAULT_OWNER_PROCESS_NAMES
    lock_suffixes: tuple[str, ...] = DEFAULT_LOCK_SUFFIXES
    log_dir: Optional[Path] = None
    version: int = CONFIG_VERSION

    @property
    def storage_path(self) -> Path:
        """Attachment storage directory next to the database."""
        return self.db_path.parent / "storage"


def _env_bool(name: str) -> Optional[bool]:
    value = os.environ.get(name)
    if value is None or value == "":
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


def _apply_env(config: BridgeConfig) -> BridgeConfig:
    db_path = os.environ.get("ZOTERO_DB_PATH")
    if db_path:
        config.db_path = Path(db_path).expanduser()
    readonly = _env_bool("ZOTERO_BRIDGE_READONLY")
    if readonly is not None:
        config.readonly = readonly
    log_dir = os.environ.get("ZOTERO_BRIDGE_LOG_DIR")
    if log_dir:
        config.log_dir = Path(log_dir).expanduser()
    return config


def config_file_path() -> Path:
    explicit = os.environ.get("ZOTERO_BRIDGE_CONFIG")
    if explicit:
        return Path(explicit).expanduser()
    return get_config_dir() / CONFIG_FILENAME


def parse_config(data: dict[str, Any]) -> BridgeConfig:
    """
    Build a config from parsed TOML data.

    Raises:
        ValueError: If the config version is newer than supported
    """
    version = data.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    database = data.get("database", {})
    guard = data.get("guard", {})
    logging_section = data.get("logging", {})

    config = BridgeConfig(version=version)
    if database.get("path"):
        config.db_path = Path(database["path"]).expanduser()
    config.readonly = bool(database.get("readonly", config.readonly))
    config.autosave = bool(database.get("autosave", config.autosave))
    if guard.get("backup_dir"):
        config.backup_dir = Path(guard["backup_dir"]).expanduser()
    if "owner_process_names" in guard:
        config.owner_process_names = tuple(guard["owner_process_names"])
    if "lock_suffixes" in guard:
        config.lock_suffixes = tuple(guard["lock_suffixes"])
    if logging_section.get("dir"):
        config.log_dir = Path(logging_section["dir"]).expanduser()
    return config


def load_config(path: Optional[Path] = None) -> BridgeConfig:
    """
    Load configuration from TOML (if present) and apply env overrides.

    This is the main entry point for config management.

    Raises:
        ValueError: If config is invalid
    """
    config_path = path or config_file_path()
    if config_path.exists():
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
        config = parse_config(data)
    else:
        config = BridgeConfig()
    return _apply_env(config)


def save_config(config: BridgeConfig, path: Optional[Path] = None) -> Path:
    """
    Save configuration as TOML.

    Creates the directory if it doesn't exist.
    """
    config_path = path or config_file_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)

    database: dict[str, Any] = {
        "path": str(config.db_path),
        "readonly": config.readonly,
        "autosave": config.autosave,
    }
    guard: dict[str, Any] = {
        "owner_process_names": list(config.owner_process_names),
        "lock_suffixes": list(config.lock_suffixes),
    }
    if config.backup_dir:
        guard["backup_dir"] = str(config.backup_dir)
    data: dict[str, Any] = {
        "version": config.version,
        "database": database,
        "guard": guard,
    }
    if config.log_dir:
        data["logging"] = {"dir": str(config.log_dir)}

    with open(config_path, "wb") as f:
        tomli_w.dump(data, f)
    return config_path
