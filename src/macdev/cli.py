from __future__ import annotations

import argparse
import json
import logging
import os
import subprocess
import sys
import textwrap
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any

from ._version import __version__
from .completion import SUPPORTED_SHELLS, generate_completion
from .config import (
    ACTIVE_ENV_VAR,
    Config,
    apply_env_overrides,
    config_path,
    display_path,
    global_manifest_path,
    load_config,
    save_config,
)
from .environment import EnvironmentManager, ListResult, ReconcileResult
from .errors import CommandError, MacdevError
from .homebrew import Homebrew
from .manifest import ManifestStore

CHECK_FAILED_EXIT = 3

HELP_OVERVIEW = textwrap.dedent(
    f"""\
    macdev {__version__}
    Project-isolated development environments on top of Homebrew.

    What you can do:
      macdev init                      Create macdev.toml in the current project
      macdev add python@3.12 rust      Install packages for this project only (pure)
      macdev add --impure git          Install a package system-wide (impure)
      macdev remove rust               Stop using a package (uninstalled on next gc)
      macdev install                   Install everything macdev.toml / macdev.lock asks for
      macdev shell                     Enter a shell with the project profile on PATH
      macdev sync                      Reinstall anything the manifests track but is missing
      macdev gc [--all]                Uninstall packages that were removed
      macdev upgrade [package]         Upgrade one or all managed packages
      macdev check [--quiet]           Exit non-zero if the environment needs setup
      macdev tap/untap <tap>           Track a Homebrew tap
      macdev list                      Show tracked packages and taps

    Run `macdev help <command>` for details on a command.
    """
)


def _add_runtime_overrides(parser: argparse.ArgumentParser, *, suppress: bool = False) -> None:
    # Available both before and after the subcommand, e.g.:
    #   macdev --project-dir ~/src/app install
    #   macdev install --project-dir ~/src/app
    default: Any = argparse.SUPPRESS if suppress else None
    parser.add_argument("--project-dir", default=default, help="Project directory (default: current directory)")
    parser.add_argument("--brew", default=default, help="Path to the brew executable (overrides config/env)")
    parser.add_argument("--global-manifest", default=default, help="Global manifest path (overrides config/env)")
    parser.add_argument(
        "--debug",
        action="store_true",
        default=argparse.SUPPRESS if suppress else False,
        help="Log every brew invocation to stderr",
    )
    parser.add_argument(
        "--verbose-errors",
        action="store_true",
        default=argparse.SUPPRESS if suppress else False,
        help="Print the full cause chain of errors",
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="macdev",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Project-isolated development environments using Homebrew.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              MACDEV_BREW, MACDEV_GLOBAL_MANIFEST, MACDEV_CONFIG_PATH, MACDEV_DEBUG
            """
        ),
    )
    _add_runtime_overrides(p)
    p.add_argument("--version", action="version", version=f"macdev {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    def _command(name: str, help_text: str, *, aliases: list[str] | None = None, json_out: bool = True):
        cmd = sub.add_parser(name, aliases=aliases or [], help=help_text)
        _add_runtime_overrides(cmd, suppress=True)
        if json_out:
            cmd.add_argument("--json", action="store_true", help="Output JSON")
        return cmd

    _command("init", "Initialize a new project manifest", json_out=False)

    add = _command("add", "Add packages to the environment")
    add.add_argument("packages", nargs="+", help="Package specifications (e.g. python@3.11 rust node)")
    add.add_argument("--impure", action="store_true", help="Make packages available system-wide")

    remove = _command("remove", "Remove packages (moved to gc)", aliases=["rm"])
    remove.add_argument("packages", nargs="+", help="Package names")

    _command("install", "Install all packages from the manifest", aliases=["i"])
    _command("sync", "Sync packages and taps from the manifests")

    gc = _command("gc", "Garbage collect removed packages")
    gc.add_argument("--all", action="store_true", help="Also uninstall every pure package")

    check = _command("check", "Exit non-zero if the environment needs setup", json_out=False)
    check.add_argument("--quiet", "-q", action="store_true", help="Suppress output")

    upgrade = _command("upgrade", "Upgrade one or all managed packages")
    upgrade.add_argument("package", nargs="?", help="Package to upgrade (default: all)")

    tap = _command("tap", "Add a Homebrew tap")
    tap.add_argument("tap", help="Tap name (e.g. homebrew/cask-fonts)")

    untap = _command("untap", "Remove a Homebrew tap")
    untap.add_argument("tap", help="Tap name")

    _command("list", "List tracked packages and taps", aliases=["ls"])
    _command("shell", "Enter a shell with the project profile on PATH", json_out=False)

    completion = sub.add_parser("completion", help="Print a shell completion script")
    completion.add_argument("shell", choices=SUPPORTED_SHELLS)

    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show effective config")
    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--brew-path")
    cfg_set.add_argument("--global-manifest")

    help_p = sub.add_parser("help", aliases=["h"], help="Show an overview or help for a command")
    help_p.add_argument("topic", nargs="?", help="Command to show help for")

    return p


def _effective_config(args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    cfg = apply_env_overrides(load_config())
    brew = getattr(args, "brew", None)
    if brew:
        cfg = replace(cfg, brew_path=brew)
    global_manifest = getattr(args, "global_manifest", None)
    if global_manifest:
        cfg = replace(cfg, global_manifest=global_manifest)
    return cfg


def _make_manager(args: argparse.Namespace) -> EnvironmentManager:
    cfg = _effective_config(args)
    project_dir = Path(getattr(args, "project_dir", None) or ".")
    store = ManifestStore(project_dir=project_dir, global_path=global_manifest_path(cfg))
    return EnvironmentManager(store=store, brew=Homebrew(cfg.brew_path))


def _print_table(rows: list[list[str]]) -> None:
    widths = [max(len(r[i]) for r in rows) for i in range(len(rows[0]))]
    for r in rows:
        print("  ".join(cell.ljust(widths[i]) for i, cell in enumerate(r)).rstrip())


_RESULT_ACTIONS = (
    "installed",
    "restored",
    "unlinked",
    "removed",
    "uninstalled",
    "retained",
    "upgraded",
    "tapped",
    "untapped",
    "unchanged",
)


def _print_result(result: ReconcileResult, *, as_json: bool) -> None:
    if as_json:
        print(json.dumps(result.to_dict(), indent=2, sort_keys=True))
        return

    counts = [[action, str(len(getattr(result, action)))] for action in _RESULT_ACTIONS if getattr(result, action)]
    if counts:
        _print_table([["ACTION", "COUNT"], *counts])
    for action in _RESULT_ACTIONS:
        for item in getattr(result, action):
            print(f"{action}: {item}")
    for note in result.notes:
        print(f"note: {note}")
    for warning in result.warnings:
        print(f"warning: {warning}")
    if result.lock_path is not None:
        print(f"lock: {result.lock_path}")


def cmd_init(args: argparse.Namespace) -> int:
    manager = _make_manager(args)
    if manager.init():
        print("Initialized macdev environment")
        print(f"  Created {manager.store.manifest_path}")
    else:
        print("Manifest already exists")
    return 0


def cmd_add(args: argparse.Namespace) -> int:
    manager = _make_manager(args)
    result = ReconcileResult()
    for package in args.packages:
        result.merge(manager.add(package, impure=args.impure))
    _print_result(result, as_json=args.json)
    return 0


def cmd_remove(args: argparse.Namespace) -> int:
    manager = _make_manager(args)
    result = ReconcileResult()
    for package in args.packages:
        result.merge(manager.remove(package))
    _print_result(result, as_json=args.json)
    return 0


def cmd_install(args: argparse.Namespace) -> int:
    _print_result(_make_manager(args).install(), as_json=args.json)
    return 0


def cmd_sync(args: argparse.Namespace) -> int:
    result = _make_manager(args).sync()
    if not args.json and not (result.installed or result.tapped):
        print("All items already synced")
    _print_result(result, as_json=args.json)
    return 0


def cmd_gc(args: argparse.Namespace) -> int:
    _print_result(_make_manager(args).gc(all_pure=args.all), as_json=args.json)
    return 0


def cmd_upgrade(args: argparse.Namespace) -> int:
    _print_result(_make_manager(args).upgrade(args.package), as_json=args.json)
    return 0


def cmd_tap(args: argparse.Namespace) -> int:
    _print_result(_make_manager(args).tap(args.tap), as_json=args.json)
    return 0


def cmd_untap(args: argparse.Namespace) -> int:
    _print_result(_make_manager(args).untap(args.tap), as_json=args.json)
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    report = _make_manager(args).check()
    if report.ok:
        if not args.quiet:
            print("Environment is set up")
        return 0
    if not args.quiet:
        for problem in report.problems:
            print(problem, file=sys.stderr)
    return CHECK_FAILED_EXIT


def _print_listing(listing: ListResult) -> None:
    if listing.empty:
        print("No packages or taps installed")
        return
    where = display_path(listing.global_path)
    if listing.project:
        print("Project packages (from macdev.toml):")
        for name, version in sorted(listing.project.items()):
            print(f"  {name}" if version == "*" else f"  {name}@{version}")
        print()
    if listing.packages:
        print(f"Pure packages (from {where}):")
        for name, version in sorted(listing.packages.items()):
            print(f"  {name}" if version == "*" else f"  {name}@{version}")
        print()
    if listing.impure:
        print(f"Impure packages (from {where}):")
        for name in listing.impure:
            print(f"  {name}")
        print()
    if listing.gc:
        print("Pending garbage collection:")
        for name in sorted(listing.gc):
            print(f"  {name}")
        print()
    if listing.taps:
        print("Taps:")
        for name in listing.taps:
            print(f"  {name}")


def cmd_list(args: argparse.Namespace) -> int:
    listing = _make_manager(args).list()
    if args.json:
        payload = {
            "project": listing.project,
            "packages": listing.packages,
            "impure": list(listing.impure),
            "gc": listing.gc,
            "taps": list(listing.taps),
            "global_manifest": str(listing.global_path),
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0
    _print_listing(listing)
    return 0


def cmd_shell(args: argparse.Namespace) -> int:
    manager = _make_manager(args)
    # Nested shells skip the reinstall to avoid fighting the outer session.
    if os.getenv(ACTIVE_ENV_VAR) is None:
        print("Ensuring environment is up to date...")
        _print_result(manager.install(), as_json=False)
        print()

    profile_bin = manager.profile.bin_dir
    if not profile_bin.is_dir():
        raise MacdevError("Profile directory not found. Run 'macdev install' first.")

    env = dict(os.environ)
    env["PATH"] = f"{profile_bin.resolve()}{os.pathsep}{env.get('PATH', '')}"
    env[ACTIVE_ENV_VAR] = "1"
    shell = os.getenv("SHELL") or "/bin/bash"

    print("Entering macdev environment...")
    print(f"  Shell: {shell}")
    print("  Type 'exit' to leave")
    try:
        return subprocess.call([shell], env=env)
    except OSError as e:
        raise CommandError([shell], 127, str(e)) from e


def cmd_completion(args: argparse.Namespace) -> int:
    sys.stdout.write(generate_completion(args.shell))
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = apply_env_overrides(load_config())
        d = asdict(cfg)
        d["global_manifest_path"] = str(global_manifest_path(cfg))
        print(json.dumps(d, indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        updates: dict[str, Any] = {}
        if args.brew_path is not None:
            updates["brew_path"] = args.brew_path
        if args.global_manifest is not None:
            updates["global_manifest"] = args.global_manifest or None
        path = save_config(replace(cfg, **updates))
        print(str(path))
        return 0

    raise AssertionError("unreachable")


def cmd_help(parser: argparse.ArgumentParser, args: argparse.Namespace) -> int:
    if not args.topic:
        sys.stdout.write(HELP_OVERVIEW)
        return 0
    try:
        parser.parse_args([args.topic, "--help"])
    except SystemExit as e:
        return int(e.code or 0)
    return 0


def _configure_logging(debug: bool) -> None:
    level = logging.DEBUG if debug or os.getenv("MACDEV_DEBUG") else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)


def _print_error(err: BaseException, *, verbose: bool) -> None:
    print(f"error: {err}", file=sys.stderr)
    if not verbose:
        return
    print("error_details:", file=sys.stderr)
    cause = err.__cause__
    depth = 0
    while cause is not None:
        depth += 1
        print(f"  cause[{depth}]: {type(cause).__name__}: {cause}", file=sys.stderr)
        cause = cause.__cause__


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(getattr(args, "debug", False))
    try:
        if args.cmd in ("help", "h"):
            return cmd_help(parser, args)
        if args.cmd == "init":
            return cmd_init(args)
        if args.cmd == "add":
            return cmd_add(args)
        if args.cmd in ("remove", "rm"):
            return cmd_remove(args)
        if args.cmd in ("install", "i"):
            return cmd_install(args)
        if args.cmd == "sync":
            return cmd_sync(args)
        if args.cmd == "gc":
            return cmd_gc(args)
        if args.cmd == "check":
            return cmd_check(args)
        if args.cmd == "upgrade":
            return cmd_upgrade(args)
        if args.cmd == "tap":
            return cmd_tap(args)
        if args.cmd == "untap":
            return cmd_untap(args)
        if args.cmd in ("list", "ls"):
            return cmd_list(args)
        if args.cmd == "shell":
            return cmd_shell(args)
        if args.cmd == "completion":
            return cmd_completion(args)
        if args.cmd == "config":
            return cmd_config(args)
        raise AssertionError("unreachable")
    except MacdevError as e:
        _print_error(e, verbose=getattr(args, "verbose_errors", False))
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
