from __future__ import annotations

import json
import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .config import DEFAULT_BREW_PATH
from .errors import BestEffort, CommandError

log = logging.getLogger(__name__)

ALREADY_INSTALLED_MARKER = "already installed"


@dataclass(frozen=True)
class PackageInfo:
    version: str
    formula: str


@dataclass(frozen=True)
class UpgradeOutcome:
    command: tuple[str, ...]
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def changed(self) -> bool:
        return self.ok and ALREADY_INSTALLED_MARKER not in self.output


class PackageManager(Protocol):
    def is_installed(self) -> bool:
        ...

    def is_package_installed(self, name: str) -> bool:
        ...

    def install(self, spec: str, *, link: bool) -> None:
        ...

    def uninstall(self, name: str) -> None:
        ...

    def unlink(self, name: str) -> BestEffort:
        ...

    def prefix(self, spec: str) -> Path:
        ...

    def deps(self, spec: str) -> list[str]:
        ...

    def info(self, spec: str) -> PackageInfo | None:
        ...

    def upgrade(self, spec: str) -> UpgradeOutcome:
        ...

    def cleanup(self) -> None:
        ...

    def is_tapped(self, name: str) -> bool:
        ...

    def tap(self, name: str) -> None:
        ...

    def untap(self, name: str) -> None:
        ...

    def list_taps(self) -> list[str]:
        ...


def _lines(text: str) -> list[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


def parse_info_json(text: str) -> PackageInfo | None:
    """Extract the stable version and full formula name from ``brew info --json=v2``."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    formulae = data.get("formulae")
    if not isinstance(formulae, list) or not formulae or not isinstance(formulae[0], dict):
        return None
    formula = formulae[0]
    versions = formula.get("versions")
    version = versions.get("stable") if isinstance(versions, dict) else None
    full_name = formula.get("full_name") or formula.get("name")
    if not isinstance(version, str) or not isinstance(full_name, str):
        return None
    return PackageInfo(version=version, formula=full_name)


class Homebrew:
    """Blocking subprocess wrapper around the ``brew`` executable.

    Interactive commands (install, cleanup, tap, untap) inherit the terminal.
    Everything else captures stdout and stderr separately: only stdout is
    parsed, stderr is kept for error messages. No call has a timeout.
    """

    def __init__(self, brew_path: str = DEFAULT_BREW_PATH) -> None:
        self.brew_path = brew_path

    def _run(self, *args: str, capture: bool = True) -> subprocess.CompletedProcess[str]:
        cmd = [self.brew_path, *args]
        log.debug("running %s", " ".join(cmd))
        if capture:
            return subprocess.run(
                cmd,
                check=False,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        return subprocess.run(cmd, check=False, text=True)

    def _check(self, *args: str, capture: bool = True) -> subprocess.CompletedProcess[str]:
        try:
            proc = self._run(*args, capture=capture)
        except OSError as e:
            raise CommandError([self.brew_path, *args], 127, str(e)) from e
        if proc.returncode != 0:
            raise CommandError([self.brew_path, *args], proc.returncode, proc.stderr or proc.stdout or "")
        return proc

    def _query(self, *args: str) -> subprocess.CompletedProcess[str] | None:
        try:
            proc = self._run(*args)
        except OSError as e:
            log.debug("brew query failed: %s", e)
            return None
        if proc.returncode != 0:
            log.debug("brew %s exited with %s", " ".join(args), proc.returncode)
            return None
        return proc

    def is_installed(self) -> bool:
        if shutil.which(self.brew_path) is None:
            return False
        return self._query("--version") is not None

    def is_package_installed(self, name: str) -> bool:
        return self._query("list", name) is not None

    def install(self, spec: str, *, link: bool) -> None:
        self._check("install", spec, capture=False)
        if not link:
            result = self.unlink(spec)
            if not result.ok:
                log.debug("unlink after install of %s failed: %s", spec, result.detail)

    def uninstall(self, name: str) -> None:
        self._check("uninstall", name)

    def unlink(self, name: str) -> BestEffort:
        try:
            self._check("unlink", name)
        except CommandError as e:
            return BestEffort.failure(str(e))
        return BestEffort.success()

    def prefix(self, spec: str) -> Path:
        proc = self._check("--prefix", spec)
        out = (proc.stdout or "").strip()
        if not out:
            raise CommandError([self.brew_path, "--prefix", spec], proc.returncode, "empty prefix")
        return Path(out.splitlines()[-1].strip())

    def deps(self, spec: str) -> list[str]:
        proc = self._query("deps", "--formula", spec)
        if proc is None:
            return []
        return _lines(proc.stdout or "")

    def info(self, spec: str) -> PackageInfo | None:
        proc = self._query("info", "--json=v2", spec)
        if proc is None:
            return None
        return parse_info_json(proc.stdout or "")

    def upgrade(self, spec: str) -> UpgradeOutcome:
        command = (self.brew_path, "upgrade", spec)
        try:
            proc = self._run("upgrade", spec)
        except OSError as e:
            return UpgradeOutcome(command=command, returncode=127, output=str(e))
        # "already installed" is reported on stderr
        output = (proc.stdout or "") + (proc.stderr or "")
        return UpgradeOutcome(command=command, returncode=proc.returncode, output=output)

    def cleanup(self) -> None:
        self._check("cleanup", capture=False)

    def list_taps(self) -> list[str]:
        proc = self._query("tap")
        if proc is None:
            return []
        return _lines(proc.stdout or "")

    def is_tapped(self, name: str) -> bool:
        return name in self.list_taps()

    def tap(self, name: str) -> None:
        self._check("tap", name, capture=False)

    def untap(self, name: str) -> None:
        self._check("untap", name, capture=False)
