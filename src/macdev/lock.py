from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ._version import __version__
from .homebrew import PackageManager
from .manifest import LocalManifest, read_toml, write_toml_atomic


@dataclass(frozen=True)
class LockedPackage:
    version: str
    formula: str

    def to_dict(self) -> dict[str, str]:
        return {"version": self.version, "formula": self.formula}


@dataclass(frozen=True)
class LockMetadata:
    generated: str
    tool_version: str


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class Lock:
    metadata: LockMetadata = field(default_factory=lambda: LockMetadata(generated=_now(), tool_version=__version__))
    packages: dict[str, LockedPackage] = field(default_factory=dict)
    dependencies: dict[str, LockedPackage] = field(default_factory=dict)
    impure: dict[str, LockedPackage] = field(default_factory=dict)  # reserved, never populated

    def add_package(self, name: str, version: str, formula: str) -> None:
        self.packages[name] = LockedPackage(version=version, formula=formula)

    def add_dependency(self, package: str, dep: str, version: str, formula: str) -> None:
        self.dependencies[f"{package}:{dep}"] = LockedPackage(version=version, formula=formula)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "metadata": {
                "generated": self.metadata.generated,
                "macdev_version": self.metadata.tool_version,
            }
        }
        for key, table in (("packages", self.packages), ("dependencies", self.dependencies), ("impure", self.impure)):
            if table:
                data[key] = {name: table[name].to_dict() for name in sorted(table)}
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Lock":
        meta = raw.get("metadata")
        if not isinstance(meta, dict):
            meta = {}
        tool_version = meta.get("macdev_version", meta.get("tool_version", ""))
        return cls(
            metadata=LockMetadata(generated=str(meta.get("generated", "")), tool_version=str(tool_version)),
            packages=_locked_table(raw.get("packages")),
            dependencies=_locked_table(raw.get("dependencies")),
            impure=_locked_table(raw.get("impure")),
        )


def _locked_table(value: Any) -> dict[str, LockedPackage]:
    if not isinstance(value, dict):
        return {}
    out: dict[str, LockedPackage] = {}
    for key, item in value.items():
        if not isinstance(item, dict):
            continue
        version = item.get("version")
        formula = item.get("formula")
        if isinstance(version, str) and isinstance(formula, str):
            out[key] = LockedPackage(version=version, formula=formula)
    return out


def load_lock(path: Path) -> Lock | None:
    if not path.exists():
        return None
    return Lock.from_dict(read_toml(path, what="lock file"))


def save_lock(lock: Lock, path: Path) -> None:
    write_toml_atomic(path, lock.to_dict())


def generate_lock(manifest: LocalManifest, brew: PackageManager) -> Lock:
    """Snapshot installed versions of every project package and its flat dependencies.

    Packages or dependencies the package manager cannot describe are left out
    rather than failing the whole snapshot.
    """
    lock = Lock()
    for name, spec in manifest.specs():
        info = brew.info(spec)
        if info is None:
            continue
        lock.add_package(name, info.version, info.formula)
        for dep in brew.deps(spec):
            dep_info = brew.info(dep)
            if dep_info is None:
                continue
            lock.add_dependency(name, dep, dep_info.version, dep_info.formula)
    return lock
