"""
Platform metadata provider

Everything appsync needs to know about the target app (SSH endpoint, pinned
host key, GUID, run state, backend flag, one-time SSH code) is obtained by
driving the platform's own command-line client.
"""
import json
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .exceptions import PlatformError


@dataclass(frozen=True)
class AppInfo:
    name: str
    guid: str
    state: str
    diego: bool


@dataclass(frozen=True)
class SSHInfo:
    endpoint: str
    fingerprint: str


def _run(argv: list[str]) -> str:
    """Run a platform CLI command and return its stdout. Raises PlatformError on failure."""
    try:
        result = subprocess.run(argv, capture_output=True, text=True, timeout=60)
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise PlatformError(f"could not run {' '.join(argv)!r}: {exc}") from exc
    if result.returncode != 0:
        detail = (result.stderr or result.stdout).strip()
        raise PlatformError(f"{' '.join(argv)!r} exited {result.returncode}: {detail}")
    return result.stdout


class CFPlatform:
    """Talks to the platform through the `cf` binary."""

    def __init__(self, binary: str = "cf", runner: Callable[[list[str]], str] = _run,
                 cf_home: Optional[Path] = None):
        self.binary = binary
        self._run = runner
        self._cf_home = cf_home

    def _cf(self, *args: str) -> str:
        return self._run([self.binary, *args])

    def _curl(self, path: str) -> dict:
        out = self._cf("curl", path)
        try:
            return json.loads(out)
        except ValueError as exc:
            raise PlatformError(f"unexpected response from {path}: {exc}") from exc

    def ssh_info(self) -> SSHInfo:
        data = self._curl("/v2/info")
        endpoint = data.get("app_ssh_endpoint")
        if not endpoint:
            raise PlatformError("the platform does not advertise an SSH endpoint")
        return SSHInfo(endpoint=endpoint,
                       fingerprint=data.get("app_ssh_host_key_fingerprint") or "")

    def app(self, name: str) -> AppInfo:
        guid = self._cf("app", name, "--guid").strip()
        if not guid:
            raise PlatformError(f"app {name!r} not found")
        entity = self._curl(f"/v2/apps/{guid}").get("entity", {})
        return AppInfo(name=name, guid=guid,
                       state=str(entity.get("state", "")),
                       diego=bool(entity.get("diego", False)))

    def ssh_code(self) -> str:
        lines = self._cf("ssh-code").splitlines()
        code = lines[0].strip() if lines else ""
        if not code:
            raise PlatformError("the platform returned an empty ssh code")
        return code

    def ssl_disabled(self) -> bool:
        """True when the cf CLI was targeted with --skip-ssl-validation."""
        home = self._cf_home or Path(os.environ.get("CF_HOME") or Path.home())
        cfg = home / ".cf" / "config.json"
        if not cfg.is_file():
            return False
        try:
            return bool(json.loads(cfg.read_text("utf-8")).get("SSLDisabled", False))
        except (OSError, ValueError):
            return False
