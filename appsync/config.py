"""
Configuration constants for appsync
"""
import os
from pathlib import Path
from typing import Optional

# ══════════════════════════════════════════════════════════════════════════════
#  DEFAULTS  ── overridden by YAML config or apply_profile()
# ══════════════════════════════════════════════════════════════════════════════

APP_NAME: Optional[str] = None

# Local source dir; None means ./sync-<app>
SOURCE_DIR: Optional[str] = None
# Remote target dir relative to DEFAULT_ROOT_TARGET_FOLDER; None means the root itself
TARGET_DIR: Optional[str] = None

FORCE_SYNC = False

# "sftp" (structured protocol) or "scp" (framed copy-stream)
TRANSPORT = "sftp"

INSTANCE_INDEX = 0

# Forwarding specs as "LOCAL_ADDR=REMOTE_ADDR" strings, e.g. "8080=localhost:8080"
FORWARD_SPECS: list = []

# Platform command-line client used for app metadata and one-time ssh codes
CF_BINARY = "cf"

DEFAULT_SYNC_FOLDER = "sync"
DEFAULT_ROOT_TARGET_FOLDER = "~/app"

IGNORE_FILENAME = ".syncignore"

# Editor swap files never leave the machine
IGNORED_EXTS = ("swp", "swx")

# Capacity of the watcher → consumer queue; a full queue blocks the watcher
EVENT_QUEUE_SIZE = 50

# Seconds between SSH keep-alive requests
KEEPALIVE_INTERVAL = 30

CONNECT_TIMEOUT = 20

# Retry settings
RETRY_MAX = 5
RETRY_BASE_DELAY = 2.0  # seconds; doubles each attempt

PROJECT_FILE = ".appsync"


# ══════════════════════════════════════════════════════════════════════════════
#  DERIVED PATHS
# ══════════════════════════════════════════════════════════════════════════════

def get_source_dir(app_name: str, source: Optional[str] = None) -> str:
    """Return the local source dir: the explicit one, or ./sync-<app>."""
    if source:
        return source
    return f"./{DEFAULT_SYNC_FOLDER}-{app_name}"


def get_target_dir(target: Optional[str] = None) -> str:
    """Return the remote target dir, always rooted under DEFAULT_ROOT_TARGET_FOLDER."""
    if not target:
        return DEFAULT_ROOT_TARGET_FOLDER
    if not target.startswith("/"):
        target = "/" + target
    return DEFAULT_ROOT_TARGET_FOLDER + target


# ══════════════════════════════════════════════════════════════════════════════
#  GLOBAL CONFIG FILE  ── $XDG_CONFIG_HOME/appsync/config.yaml
# ══════════════════════════════════════════════════════════════════════════════

def get_global_config_dir() -> Path:
    """Return the global config directory for appsync."""
    xdg = os.environ.get("XDG_CONFIG_HOME", "")
    if xdg:
        return Path(xdg) / "appsync"
    if os.name == "nt":
        appdata = os.environ.get("APPDATA", "")
        if appdata:
            return Path(appdata) / "appsync"
    return Path.home() / ".config" / "appsync"


def load_global_config() -> dict:
    """Load global config from the appsync config directory."""
    import yaml

    cfg_path = get_global_config_dir() / "config.yaml"
    if not cfg_path.is_file():
        return {}
    try:
        with cfg_path.open("r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError):
        return {}


# ══════════════════════════════════════════════════════════════════════════════
#  PROJECT CONFIG FILE  ── .appsync (searched upward)
# ══════════════════════════════════════════════════════════════════════════════

def find_project_file(start: Optional[Path] = None) -> Optional[Path]:
    """
    Search upward from *start* (default: cwd) for a .appsync YAML file.
    Returns the Path if found, or None if no .appsync exists in any parent.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / PROJECT_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_project_file(path: Path) -> dict:
    """Parse a .appsync YAML file and return its contents as a dict."""
    import yaml

    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def get_profile(data: dict, profile_name: str = "default") -> dict:
    """
    Extract a named profile from a .appsync or config.yaml data dict.
    Falls back to the first profile if the named one is not found.
    Returns a flat profile dict merged with top-level defaults.
    """
    defaults = data.get("defaults", {})
    profiles = data.get("profiles", [])
    if not profiles:
        return defaults.copy()
    profile = next((p for p in profiles if p.get("name") == profile_name), None)
    if profile is None:
        profile = profiles[0]
    merged = defaults.copy()
    merged.update(profile)
    return merged


# ══════════════════════════════════════════════════════════════════════════════
#  APPLY PROFILE  ── mutates module-level variables
# ══════════════════════════════════════════════════════════════════════════════

def apply_profile(profile: dict):
    """
    Apply a profile dict to the module-level config variables.
    Supports keys: app, source, target, force_sync, transport, instance_index,
                   keepalive_interval, cf_binary, forward.
    """
    global APP_NAME, SOURCE_DIR, TARGET_DIR, FORCE_SYNC, TRANSPORT
    global INSTANCE_INDEX, KEEPALIVE_INTERVAL, CF_BINARY, FORWARD_SPECS

    if "app" in profile:
        APP_NAME = str(profile["app"]) if profile["app"] else None
    if "source" in profile:
        SOURCE_DIR = str(profile["source"]) if profile["source"] else None
    if "target" in profile:
        TARGET_DIR = str(profile["target"]) if profile["target"] else None
    if "force_sync" in profile:
        FORCE_SYNC = bool(profile["force_sync"])
    if "transport" in profile:
        transport = str(profile["transport"]).lower()
        if transport not in ("sftp", "scp"):
            raise ValueError(f"unknown transport {transport!r} (expected 'sftp' or 'scp')")
        TRANSPORT = transport
    if "instance_index" in profile:
        INSTANCE_INDEX = int(profile["instance_index"])
    if "keepalive_interval" in profile:
        KEEPALIVE_INTERVAL = int(profile["keepalive_interval"])
    if "cf_binary" in profile:
        CF_BINARY = str(profile["cf_binary"])
    if "forward" in profile:
        FORWARD_SPECS = [str(s) for s in (profile["forward"] or [])]
