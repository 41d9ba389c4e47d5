from __future__ import annotations

import enum
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomli_w

from .config import LOCK_FILENAME, MANIFEST_FILENAME, PROFILE_DIRNAME, STATE_DIRNAME, VENV_DIRNAME
from .errors import ManifestMissingError, ManifestParseError
from .package_spec import UNCONSTRAINED, base_name, format_spec


class PackageState(enum.Enum):
    PURE = "pure"
    IMPURE = "impure"
    PENDING_REMOVAL = "gc"


@dataclass(frozen=True)
class Membership:
    state: PackageState
    version: str = UNCONSTRAINED

    @property
    def is_active(self) -> bool:
        return self.state is not PackageState.PENDING_REMOVAL


@dataclass
class LocalManifest:
    packages: dict[str, str] = field(default_factory=dict)

    def add_package(self, name: str, version: str) -> None:
        self.packages[name] = version

    def remove_package(self, name: str) -> None:
        self.packages.pop(name, None)

    def specs(self) -> list[tuple[str, str]]:
        """Pairs of (manifest name, install target)."""
        return [(name, format_spec(name, version)) for name, version in self.packages.items()]

    def to_dict(self) -> dict[str, Any]:
        return {"packages": dict(self.packages)}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "LocalManifest":
        return cls(packages=_string_table(raw.get("packages")))


@dataclass
class GlobalManifest:
    """Machine-wide package state.

    Every package name maps to exactly one :class:`Membership`, so a name can
    never be pure, impure and pending removal at the same time. The four
    persisted tables (``packages``, ``impure``, ``gc``, ``taps``) are derived
    from that mapping when the document is written.
    """

    entries: dict[str, Membership] = field(default_factory=dict)
    taps: set[str] = field(default_factory=set)

    def _names_in(self, state: PackageState) -> dict[str, str]:
        return {name: m.version for name, m in self.entries.items() if m.state is state}

    @property
    def packages(self) -> dict[str, str]:
        return self._names_in(PackageState.PURE)

    @property
    def impure(self) -> dict[str, bool]:
        return {name: True for name in self._names_in(PackageState.IMPURE)}

    @property
    def gc(self) -> dict[str, str]:
        return self._names_in(PackageState.PENDING_REMOVAL)

    def state_of(self, name: str) -> PackageState | None:
        m = self.entries.get(name)
        return m.state if m is not None else None

    def is_tracked(self, name: str) -> bool:
        """True if ``name`` or its base name is known in any package state."""
        if name in self.entries:
            return True
        return base_name(name) in self.entries

    def add_package(self, name: str, version: str) -> None:
        self.entries[name] = Membership(PackageState.PURE, version)

    def add_impure(self, name: str) -> None:
        self.entries[name] = Membership(PackageState.IMPURE)

    def remove_package(self, name: str) -> None:
        m = self.entries.get(name)
        if m is not None and m.is_active:
            del self.entries[name]

    def mark_for_gc(self, name: str, version: str | None = None) -> Membership | None:
        """Move an active entry to pending removal; returns the new membership.

        ``version`` overrides the recorded version, so the later uninstall
        targets the keg that was actually requested.
        """
        m = self.entries.get(name)
        if m is None or not m.is_active:
            return None
        if version is None:
            version = m.version if m.state is PackageState.PURE else UNCONSTRAINED
        moved = Membership(PackageState.PENDING_REMOVAL, version)
        self.entries[name] = moved
        return moved

    def evict_gc(self, name: str) -> bool:
        m = self.entries.get(name)
        if m is None or m.state is not PackageState.PENDING_REMOVAL:
            return False
        del self.entries[name]
        return True

    def add_tap(self, name: str) -> None:
        self.taps.add(name)

    def remove_tap(self, name: str) -> None:
        self.taps.discard(name)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"packages": dict(sorted(self.packages.items()))}
        optional = {
            "impure": dict(sorted(self.impure.items())),
            "gc": dict(sorted(self.gc.items())),
            "taps": {name: True for name in sorted(self.taps)},
        }
        data.update({k: v for k, v in optional.items() if v})
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "GlobalManifest":
        manifest = cls()
        # Later sections win, so an active state overrides a stale gc entry.
        for name, version in _string_table(raw.get("gc")).items():
            manifest.entries[name] = Membership(PackageState.PENDING_REMOVAL, version)
        for name in _flag_table(raw.get("impure")):
            manifest.entries[name] = Membership(PackageState.IMPURE)
        for name, version in _string_table(raw.get("packages")).items():
            manifest.entries[name] = Membership(PackageState.PURE, version)
        manifest.taps = set(_flag_table(raw.get("taps")))
        return manifest


def _string_table(value: Any) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    out: dict[str, str] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            continue
        if isinstance(item, str):
            out[key] = item
        elif item is True:
            out[key] = UNCONSTRAINED
    return out


def _flag_table(value: Any) -> list[str]:
    if not isinstance(value, dict):
        return []
    return [key for key, item in value.items() if isinstance(key, str) and item is not False]


def read_toml(path: Path, *, what: str) -> dict[str, Any]:
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ManifestParseError(f"Failed to parse {what} {path}: {e}") from e


def write_toml_atomic(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("wb") as f:
        tomli_w.dump(data, f)
    tmp.replace(path)


class ManifestStore:
    """Loads and saves the project manifest and the machine-wide manifest.

    Nothing is cached: each operation loads the documents it needs, mutates
    them in memory and saves them back explicitly.
    """

    def __init__(self, *, project_dir: Path, global_path: Path) -> None:
        self.project_dir = project_dir.expanduser().resolve()
        self.global_path = global_path.expanduser()
        self.manifest_path = self.project_dir / MANIFEST_FILENAME
        self.lock_path = self.project_dir / LOCK_FILENAME
        self.state_dir = self.project_dir / STATE_DIRNAME
        self.profile_dir = self.state_dir / PROFILE_DIRNAME
        self.venv_dir = self.state_dir / VENV_DIRNAME

    def exists(self) -> bool:
        return self.manifest_path.exists()

    def init(self) -> bool:
        if self.exists():
            return False
        self.save(LocalManifest())
        return True

    def load(self) -> LocalManifest:
        if not self.exists():
            raise ManifestMissingError(f"No manifest found at {self.manifest_path}. Run 'macdev init' first.")
        return LocalManifest.from_dict(read_toml(self.manifest_path, what="manifest"))

    def load_optional(self) -> LocalManifest | None:
        if not self.exists():
            return None
        return self.load()

    def load_global(self) -> GlobalManifest:
        if not self.global_path.exists():
            return GlobalManifest()
        return GlobalManifest.from_dict(read_toml(self.global_path, what="global manifest"))

    def save(self, manifest: LocalManifest) -> None:
        write_toml_atomic(self.manifest_path, manifest.to_dict())

    def save_global(self, manifest: GlobalManifest) -> None:
        write_toml_atomic(self.global_path, manifest.to_dict())
