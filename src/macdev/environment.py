from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from .errors import (
    BestEffort,
    CommandError,
    MacdevError,
    ManifestMissingError,
    NotTrackedError,
    PackageManagerMissingError,
)
from .homebrew import PackageManager
from .lock import generate_lock, load_lock, save_lock
from .manifest import GlobalManifest, LocalManifest, ManifestStore, PackageState
from .package_spec import PackageSpec, base_name, format_spec, is_python
from .profile import Profile

log = logging.getLogger(__name__)

PYTHON_UPGRADE_NOTE = (
    "Python was upgraded. You may want to recreate the venv: rm -rf .macdev/venv && macdev install"
)


@dataclass
class ReconcileResult:
    installed: list[str] = field(default_factory=list)
    restored: list[str] = field(default_factory=list)
    unlinked: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    uninstalled: list[str] = field(default_factory=list)
    retained: list[str] = field(default_factory=list)
    upgraded: list[str] = field(default_factory=list)
    tapped: list[str] = field(default_factory=list)
    untapped: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    lock_path: Path | None = None

    def acknowledge(self, outcome: BestEffort, what: str, *, warn: bool = True) -> None:
        """Record the result of a best-effort step without aborting the operation."""
        if outcome.ok:
            if outcome.detail:
                self.notes.append(outcome.detail)
            return
        log.debug("%s failed: %s", what, outcome.detail)
        if warn:
            self.warnings.append(f"{what} failed: {outcome.detail}")

    def merge(self, other: "ReconcileResult") -> None:
        for f in fields(self):
            if f.name == "lock_path":
                continue
            getattr(self, f.name).extend(getattr(other, f.name))
        if other.lock_path is not None:
            self.lock_path = other.lock_path

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {f.name: list(getattr(self, f.name)) for f in fields(self) if f.name != "lock_path"}
        payload["lock_path"] = str(self.lock_path) if self.lock_path else None
        return payload


@dataclass(frozen=True)
class CheckReport:
    ok: bool
    problems: tuple[str, ...] = ()


@dataclass(frozen=True)
class ListResult:
    project: dict[str, str] | None
    packages: dict[str, str]
    impure: tuple[str, ...]
    gc: dict[str, str]
    taps: tuple[str, ...]
    global_path: Path

    @property
    def empty(self) -> bool:
        return not (self.project or self.packages or self.impure or self.gc or self.taps)


def resolve_removal(raw: str, manifest: GlobalManifest) -> tuple[str, PackageState]:
    """Decide which global entry a ``remove`` request refers to.

    An exact match wins over a base-name match. A versioned request
    (``name@version``) only falls back to an impure base-name entry when no
    pure entry matches at all.
    """
    has_version = "@" in raw
    exact = raw if raw in manifest.entries else PackageSpec.parse(raw).name
    base = base_name(raw)

    exact_pure = manifest.state_of(exact) is PackageState.PURE
    exact_impure = manifest.state_of(exact) is PackageState.IMPURE
    base_pure = manifest.state_of(base) is PackageState.PURE
    base_impure = manifest.state_of(base) is PackageState.IMPURE

    if not (exact_pure or exact_impure or base_pure or base_impure):
        raise NotTrackedError(f"Package '{raw}' is not tracked globally")

    if has_version:
        impure = exact_impure or (not exact_pure and not base_pure and base_impure)
    else:
        impure = exact_impure or (not exact_pure and base_impure)

    if impure:
        return (exact if exact_impure else base), PackageState.IMPURE
    return (exact if exact_pure else base), PackageState.PURE


class EnvironmentManager:
    def __init__(self, *, store: ManifestStore, brew: PackageManager, create_venv: bool = True) -> None:
        self.store = store
        self.brew = brew
        self.profile = Profile(store.profile_dir)
        self.create_venv = create_venv

    def _require_brew(self) -> None:
        if not self.brew.is_installed():
            raise PackageManagerMissingError("Homebrew is not installed. Install it from https://brew.sh")

    def init(self) -> bool:
        return self.store.init()

    def _ensure_installed(self, spec: str, *, link: bool) -> Path:
        if not self.brew.is_package_installed(spec):
            self.brew.install(spec, link=link)
        elif not link:
            # Already installed: make sure it is not exposed on the global PATH.
            outcome = self.brew.unlink(spec)
            if not outcome.ok:
                log.debug("unlink of installed %s failed: %s", spec, outcome.detail)
        return self.brew.prefix(spec)

    def _setup_python(self, result: ReconcileResult) -> None:
        binary = self.profile.normalize_python()
        if binary is None:
            result.warnings.append("Could not find versioned Python binary (python3.X) in profile/bin")
            return
        result.notes.append(f"Normalized python and pip symlinks to {binary}")
        if self.create_venv:
            result.acknowledge(self.profile.setup_python_venv(self.store.venv_dir), "Python venv setup")

    def _isolate_dependencies(self, spec: str, manifest: GlobalManifest, result: ReconcileResult) -> None:
        for dep in self.brew.deps(spec):
            if manifest.is_tracked(dep):
                continue
            outcome = self.brew.unlink(dep)
            if outcome.ok:
                result.unlinked.append(dep)
            else:
                result.acknowledge(outcome, f"Unlinking dependency {dep}", warn=False)

    def _refresh_lock(self) -> BestEffort:
        try:
            local = self.store.load_optional()
            if local is None:
                return BestEffort.success()
            if not local.packages:
                self.store.lock_path.unlink(missing_ok=True)
                return BestEffort.success()
            save_lock(generate_lock(local, self.brew), self.store.lock_path)
        except (MacdevError, OSError) as e:
            return BestEffort.failure(str(e))
        return BestEffort.success()

    def _finish_with_lock(self, result: ReconcileResult) -> ReconcileResult:
        outcome = self._refresh_lock()
        result.acknowledge(outcome, "Lock file generation")
        if outcome.ok and self.store.lock_path.exists():
            result.lock_path = self.store.lock_path
        return result

    def add(self, raw: str, *, impure: bool = False) -> ReconcileResult:
        self._require_brew()
        if not impure and not self.store.exists():
            raise ManifestMissingError("No manifest found. Run 'macdev init' first to initialize the environment.")

        spec = PackageSpec.parse(raw)
        result = ReconcileResult()
        global_manifest = self.store.load_global()

        if global_manifest.evict_gc(spec.name):
            result.restored.append(spec.name)

        if impure:
            self._ensure_installed(spec.canonical, link=True)
            global_manifest.add_impure(spec.name)
            self.store.save_global(global_manifest)
        else:
            prefix = self._ensure_installed(spec.canonical, link=False)
            self.profile.create_symlinks(prefix)
            if is_python(spec.name):
                self._setup_python(result)

            local = self.store.load()
            local.add_package(spec.name, spec.manifest_version)
            self.store.save(local)

            global_manifest.add_package(spec.name, spec.manifest_version)
            self.store.save_global(global_manifest)
        result.installed.append(spec.canonical)

        self._isolate_dependencies(spec.canonical, global_manifest, result)
        return self._finish_with_lock(result)

    def remove(self, raw: str) -> ReconcileResult:
        local = self.store.load_optional()
        global_manifest = self.store.load_global()
        key, state = resolve_removal(raw, global_manifest)
        result = ReconcileResult()

        if state is PackageState.PURE and local is not None:
            candidates = (raw, PackageSpec.parse(raw).name, base_name(raw))
            local_key = next((c for c in candidates if c in local.packages), None)
            if local_key is not None:
                local.remove_package(local_key)
                self.store.save(local)
                result.warnings.extend(self.profile.rebuild(local, self.brew))
                result.notes.append("Removed from local project manifest")

        # An impure entry has no version of its own; keep the requested one.
        gc_version = PackageSpec.parse(raw).version if state is PackageState.IMPURE else None
        global_manifest.mark_for_gc(key, gc_version)
        self.store.save_global(global_manifest)
        result.removed.append(key)
        return self._finish_with_lock(result)

    def sync(self) -> ReconcileResult:
        self._require_brew()
        local = self.store.load_optional()
        global_manifest = self.store.load_global()
        result = ReconcileResult()

        if global_manifest.taps:
            tapped = set(self.brew.list_taps())
            for tap_name in sorted(global_manifest.taps):
                if tap_name in tapped:
                    result.unchanged.append(tap_name)
                    continue
                self.brew.tap(tap_name)
                result.tapped.append(tap_name)

        if local is not None:
            for name, version in local.packages.items():
                if global_manifest.state_of(name) is PackageState.PURE:
                    result.unchanged.append(name)
                    continue
                result.merge(self.add(format_spec(name, version), impure=False))

        for name in sorted(global_manifest.impure):
            if self.brew.is_package_installed(name):
                result.unchanged.append(name)
                continue
            result.merge(self.add(name, impure=True))

        return result

    def gc(self, *, all_pure: bool = False) -> ReconcileResult:
        global_manifest = self.store.load_global()
        result = ReconcileResult()
        pending = global_manifest.gc
        pure = global_manifest.packages if all_pure else {}
        if not pending and not pure:
            result.notes.append("No packages to garbage collect")
            return result

        for name, version in pending.items():
            target = format_spec(name, version)
            try:
                self.brew.uninstall(target)
            except CommandError as e:
                result.retained.append(name)
                result.warnings.append(f"Failed to uninstall {target}, keeping in gc for next run: {e}")
                continue
            global_manifest.evict_gc(name)
            result.uninstalled.append(name)

        for name, version in pure.items():
            target = format_spec(name, version)
            try:
                self.brew.uninstall(target)
            except CommandError as e:
                result.warnings.append(f"Failed to uninstall {target}: {e}")
                continue
            global_manifest.remove_package(name)
            result.uninstalled.append(name)

        self.store.save_global(global_manifest)
        self.brew.cleanup()
        return result

    def install(self) -> ReconcileResult:
        self._require_brew()
        local = self.store.load()
        had_lock = self.store.lock_path.exists()
        lock = load_lock(self.store.lock_path)
        global_manifest = self.store.load_global()
        result = ReconcileResult()

        if not local.packages:
            result.notes.append("No packages in manifest")
            return result

        has_python = False
        for name, version in local.packages.items():
            locked = lock.packages.get(name) if lock is not None else None
            target = locked.formula if locked is not None else format_spec(name, version)
            prefix = self._ensure_installed(target, link=False)
            self.profile.create_symlinks(prefix)
            global_manifest.add_package(name, version)
            result.installed.append(target)
            has_python = has_python or is_python(name)

        self.store.save_global(global_manifest)
        if has_python:
            self._setup_python(result)

        if had_lock:
            result.lock_path = self.store.lock_path
            return result
        return self._finish_with_lock(result)

    def upgrade(self, raw: str | None = None) -> ReconcileResult:
        self._require_brew()
        local = self.store.load_optional()
        global_manifest = self.store.load_global()
        if raw:
            result = self._upgrade_one(raw, local, global_manifest)
        else:
            result = self._upgrade_all(local, global_manifest)
        return self._finish_with_lock(result)

    def _upgrade_one(self, raw: str, local: LocalManifest | None, global_manifest: GlobalManifest) -> ReconcileResult:
        base = base_name(raw)
        name = PackageSpec.parse(raw).name
        is_pure = local is not None and (base in local.packages or name in local.packages)
        is_impure = PackageState.IMPURE in (global_manifest.state_of(base), global_manifest.state_of(name))
        if not (is_pure or is_impure):
            raise NotTrackedError(f"Package '{raw}' is not managed by macdev")

        outcome = self.brew.upgrade(raw)
        if not outcome.ok:
            raise CommandError(list(outcome.command), outcome.returncode, outcome.output)

        result = ReconcileResult()
        if outcome.changed:
            result.upgraded.append(raw)
        else:
            result.unchanged.append(raw)

        if is_pure and local is not None:
            result.warnings.extend(self.profile.rebuild(local, self.brew))
            if is_python(raw):
                result.notes.append(PYTHON_UPGRADE_NOTE)
        return result

    def _upgrade_all(self, local: LocalManifest | None, global_manifest: GlobalManifest) -> ReconcileResult:
        result = ReconcileResult()
        python_upgraded = False
        targets: list[tuple[str, str, bool]] = []
        if local is not None:
            targets.extend((name, spec, True) for name, spec in local.specs())
        targets.extend((name, name, False) for name in sorted(global_manifest.impure))

        for name, spec, pure in targets:
            outcome = self.brew.upgrade(spec)
            if not outcome.ok:
                result.warnings.append(f"Failed to upgrade {spec}: {outcome.output.strip()}")
                continue
            if not outcome.changed:
                result.unchanged.append(spec)
                continue
            result.upgraded.append(spec)
            python_upgraded = python_upgraded or (pure and is_python(name))

        if local is not None and local.packages:
            result.warnings.extend(self.profile.rebuild(local, self.brew))
        if python_upgraded:
            result.notes.append(PYTHON_UPGRADE_NOTE)
        return result

    def check(self) -> CheckReport:
        if not self.store.exists():
            return CheckReport(ok=False, problems=("No manifest found. Run 'macdev init' first.",))

        local = self.store.load()
        global_manifest = self.store.load_global()
        problems: list[str] = []

        missing = [name for name in local.packages if global_manifest.state_of(name) is not PackageState.PURE]
        if missing:
            problems.append(f"Missing packages: {', '.join(missing)}. Run 'macdev install' to set up.")
        if not self.profile.is_populated():
            problems.append("Profile directory empty. Run 'macdev install'.")
        return CheckReport(ok=not problems, problems=tuple(problems))

    def tap(self, name: str) -> ReconcileResult:
        self._require_brew()
        global_manifest = self.store.load_global()
        result = ReconcileResult()

        if name in global_manifest.taps:
            result.unchanged.append(name)
            result.notes.append(f"Tap '{name}' is already tracked")
            return result

        if self.brew.is_tapped(name):
            result.notes.append("Tap already exists in Homebrew")
        else:
            self.brew.tap(name)

        global_manifest.add_tap(name)
        self.store.save_global(global_manifest)
        result.tapped.append(name)
        return result

    def untap(self, name: str) -> ReconcileResult:
        global_manifest = self.store.load_global()
        if name not in global_manifest.taps:
            raise NotTrackedError(f"Tap '{name}' is not tracked")

        if self.brew.is_tapped(name):
            self.brew.untap(name)

        global_manifest.remove_tap(name)
        self.store.save_global(global_manifest)
        return ReconcileResult(untapped=[name])

    def list(self) -> ListResult:
        local = self.store.load_optional()
        global_manifest = self.store.load_global()
        return ListResult(
            project=dict(local.packages) if local is not None else None,
            packages=global_manifest.packages,
            impure=tuple(sorted(global_manifest.impure)),
            gc=global_manifest.gc,
            taps=tuple(sorted(global_manifest.taps)),
            global_path=self.store.global_path,
        )
