from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from pathlib import Path

from .errors import BestEffort, CommandError
from .homebrew import PackageManager
from .manifest import LocalManifest
from .package_spec import is_python

log = logging.getLogger(__name__)

# (source directory under the install prefix, target directory under the profile)
LINK_LAYOUT: tuple[tuple[str, str], ...] = (
    ("bin", "bin"),
    ("libexec/bin", "bin"),
    ("lib", "lib"),
)

_VERSIONED_PYTHON_RE = re.compile(r"^python3\.(\d+)$")


def _replace_symlink(target: Path, source: str | Path) -> None:
    if target.is_symlink() or target.exists():
        target.unlink()
    os.symlink(source, target)


class Profile:
    """Directory of symlinks exposing a project's pure packages.

    The profile is derived state: it is only ever populated from install
    prefixes and rebuilt from scratch, never edited in place for removals.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.bin_dir = root / "bin"
        self.lib_dir = root / "lib"

    def create_symlinks(self, prefix: Path) -> list[Path]:
        self.bin_dir.mkdir(parents=True, exist_ok=True)
        self.lib_dir.mkdir(parents=True, exist_ok=True)

        created: list[Path] = []
        for source_sub, target_sub in LINK_LAYOUT:
            source_dir = prefix / source_sub
            if not source_dir.is_dir():
                continue
            target_dir = self.root / target_sub
            for entry in sorted(source_dir.iterdir()):
                target = target_dir / entry.name
                _replace_symlink(target, entry)
                created.append(target)
        return created

    def clear(self) -> None:
        if self.root.is_symlink():
            self.root.unlink()
        elif self.root.exists():
            shutil.rmtree(self.root)

    def rebuild(self, manifest: LocalManifest, brew: PackageManager) -> list[str]:
        """Recreate the profile from ``manifest``; returns warnings for skipped packages."""
        self.clear()
        warnings: list[str] = []
        has_python = False
        for name, spec in manifest.specs():
            try:
                prefix = brew.prefix(spec)
            except CommandError as e:
                warnings.append(f"Skipping {spec} while rebuilding profile: {e}")
                continue
            self.create_symlinks(prefix)
            has_python = has_python or is_python(name)
        if has_python:
            self.normalize_python()
        return warnings

    def is_populated(self) -> bool:
        if not self.bin_dir.is_dir():
            return False
        return any(True for _ in self.bin_dir.iterdir())

    def normalize_python(self) -> str | None:
        """Point python/python3 (and pip/pip3) at the versioned interpreter.

        Returns the versioned binary name, or None when none is linked.
        """
        if not self.bin_dir.is_dir():
            return None
        versioned: dict[int, str] = {}
        for p in self.bin_dir.iterdir():
            m = _VERSIONED_PYTHON_RE.match(p.name)
            if m:
                versioned[int(m.group(1))] = p.name
        if not versioned:
            log.debug("no python3.X binary in %s", self.bin_dir)
            return None
        minor = max(versioned)
        binary = versioned[minor]
        _replace_symlink(self.bin_dir / "python3", binary)
        _replace_symlink(self.bin_dir / "python", binary)

        pip = f"pip3.{minor}"
        if (self.bin_dir / pip).is_symlink() or (self.bin_dir / pip).exists():
            _replace_symlink(self.bin_dir / "pip3", pip)
            _replace_symlink(self.bin_dir / "pip", pip)
        return binary

    def setup_python_venv(self, venv_dir: Path) -> BestEffort:
        if venv_dir.exists():
            return BestEffort(ok=True, detail="Python venv already exists")
        python = self.bin_dir / "python3"
        if not python.exists():
            return BestEffort.failure("Python binary not found in profile; skipping venv creation")
        cmd = [str(python), "-m", "venv", str(venv_dir)]
        log.debug("running %s", " ".join(cmd))
        try:
            proc = subprocess.run(cmd, check=False)
        except OSError as e:
            return BestEffort.failure(f"Failed to create Python virtual environment: {e}")
        if proc.returncode != 0:
            return BestEffort.failure(f"Failed to create Python virtual environment (exit code {proc.returncode})")
        return BestEffort(ok=True, detail=f"Python venv created at {venv_dir}")
