import io
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from fakes import FakeBrew

from macdev.cli import CHECK_FAILED_EXIT, _make_manager, build_parser, main
from macdev.config import Config
from macdev.environment import EnvironmentManager
from macdev.errors import ManifestParseError
from macdev.manifest import ManifestStore

_ENV_KEYS = ("MACDEV_BREW", "MACDEV_GLOBAL_MANIFEST", "MACDEV_ACTIVE", "MACDEV_DEBUG")


class CliTestCase(unittest.TestCase):
    def setUp(self) -> None:
        td = tempfile.TemporaryDirectory()
        self.addCleanup(td.cleanup)
        self.root = Path(td.name)
        (self.root / "project").mkdir()
        self.store = ManifestStore(project_dir=self.root / "project", global_path=self.root / "config" / "macdev.toml")
        self.brew = FakeBrew(self.root / "Cellar")
        self.manager = EnvironmentManager(store=self.store, brew=self.brew, create_venv=False)

        env = patch.dict(os.environ, {"MACDEV_CONFIG_PATH": str(self.root / "config.json")})
        env.start()
        self.addCleanup(env.stop)
        for key in _ENV_KEYS:
            os.environ.pop(key, None)

    def run_main(self, argv: list[str]) -> tuple[int, str, str]:
        out, err = io.StringIO(), io.StringIO()
        with (
            patch("macdev.cli._make_manager", return_value=self.manager),
            patch("sys.stdout", new=out),
            patch("sys.stderr", new=err),
        ):
            rc = main(argv)
        return rc, out.getvalue(), err.getvalue()


class TestParser(unittest.TestCase):
    def test_aliases(self) -> None:
        p = build_parser()
        self.assertEqual(p.parse_args(["rm", "rust"]).cmd, "rm")
        self.assertEqual(p.parse_args(["i"]).cmd, "i")
        self.assertEqual(p.parse_args(["ls"]).cmd, "ls")
        self.assertEqual(p.parse_args(["h"]).cmd, "h")

    def test_runtime_overrides_before_or_after_command(self) -> None:
        p = build_parser()
        before = p.parse_args(["--project-dir", "/src/app", "install"])
        after = p.parse_args(["install", "--project-dir", "/src/app", "--debug"])
        self.assertEqual(before.project_dir, "/src/app")
        self.assertFalse(before.debug)
        self.assertEqual(after.project_dir, "/src/app")
        self.assertTrue(after.debug)

    def test_add_requires_a_package(self) -> None:
        with patch("sys.stderr", new=io.StringIO()):
            with self.assertRaises(SystemExit):
                build_parser().parse_args(["add"])

    def test_make_manager_applies_flags_over_config(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            args = build_parser().parse_args(
                ["list", "--brew", "/opt/homebrew/bin/brew", "--global-manifest", f"{td}/g.toml", "--project-dir", td]
            )
            with (
                patch("macdev.cli.load_config", return_value=Config(brew_path="/usr/local/bin/brew")),
                patch.dict(os.environ, {}, clear=False),
            ):
                os.environ.pop("MACDEV_BREW", None)
                os.environ.pop("MACDEV_GLOBAL_MANIFEST", None)
                manager = _make_manager(args)
        self.assertEqual(manager.brew.brew_path, "/opt/homebrew/bin/brew")
        self.assertEqual(manager.store.global_path, Path(f"{td}/g.toml"))
        self.assertEqual(manager.store.project_dir, Path(td).resolve())


class TestCommands(CliTestCase):
    def test_init_then_add_json(self) -> None:
        rc, out, _ = self.run_main(["init"])
        self.assertEqual(rc, 0)
        self.assertIn("Initialized macdev environment", out)

        rc, out, _ = self.run_main(["add", "rust", "node@20", "--json"])
        self.assertEqual(rc, 0)
        payload = json.loads(out)
        self.assertEqual(payload["installed"], ["rust", "node@20"])
        self.assertEqual(payload["lock_path"], str(self.store.lock_path))
        self.assertEqual(self.store.load().packages, {"rust": "*", "node": "20"})

    def test_add_table_output(self) -> None:
        self.run_main(["init"])
        rc, out, _ = self.run_main(["add", "rust"])
        self.assertEqual(rc, 0)
        self.assertIn("ACTION", out)
        self.assertIn("installed: rust", out)

    def test_add_without_manifest_is_an_error(self) -> None:
        rc, out, err = self.run_main(["add", "rust"])
        self.assertEqual(rc, 1)
        self.assertEqual(out, "")
        self.assertIn("error: No manifest found", err)

    def test_remove_untracked_is_an_error(self) -> None:
        rc, _, err = self.run_main(["rm", "rust"])
        self.assertEqual(rc, 1)
        self.assertIn("error: Package 'rust' is not tracked globally", err)

    def test_check_exit_codes(self) -> None:
        rc, out, err = self.run_main(["check"])
        self.assertEqual(rc, CHECK_FAILED_EXIT)
        self.assertEqual(out, "")
        self.assertIn("No manifest found", err)

        rc, out, err = self.run_main(["check", "-q"])
        self.assertEqual(rc, CHECK_FAILED_EXIT)
        self.assertEqual((out, err), ("", ""))

        self.run_main(["init"])
        self.run_main(["add", "rust"])
        rc, out, _ = self.run_main(["check"])
        self.assertEqual(rc, 0)
        self.assertIn("Environment is set up", out)

    def test_sync_reports_when_nothing_changed(self) -> None:
        rc, out, _ = self.run_main(["sync"])
        self.assertEqual(rc, 0)
        self.assertIn("All items already synced", out)

    def test_gc_all_flag(self) -> None:
        self.run_main(["init"])
        self.run_main(["add", "rust"])
        rc, out, _ = self.run_main(["gc", "--all", "--json"])
        self.assertEqual(rc, 0)
        self.assertEqual(json.loads(out)["uninstalled"], ["rust"])

    def test_list_output(self) -> None:
        rc, out, _ = self.run_main(["list"])
        self.assertIn("No packages or taps installed", out)

        self.run_main(["init"])
        self.run_main(["add", "python@3.11"])
        self.run_main(["add", "--impure", "git"])
        self.run_main(["tap", "acme/tools"])
        rc, out, _ = self.run_main(["ls"])
        self.assertEqual(rc, 0)
        self.assertIn("Project packages (from macdev.toml):", out)
        self.assertIn("  python@3.11", out)
        self.assertIn("Impure packages", out)
        self.assertIn("  git", out)
        self.assertIn("Taps:\n  acme/tools", out)

        rc, out, _ = self.run_main(["list", "--json"])
        payload = json.loads(out)
        self.assertEqual(payload["impure"], ["git"])
        self.assertEqual(payload["project"], {"python": "3.11"})

    def test_verbose_errors_print_cause_chain(self) -> None:
        def fail(args):
            try:
                raise OSError("disk full")
            except OSError as e:
                raise ManifestParseError("Failed to parse manifest") from e

        with patch("macdev.cli.cmd_install", side_effect=fail):
            rc, _, err = self.run_main(["install", "--verbose-errors"])
        self.assertEqual(rc, 1)
        self.assertIn("error: Failed to parse manifest", err)
        self.assertIn("error_details:", err)
        self.assertIn("cause[1]: OSError: disk full", err)

        with patch("macdev.cli.cmd_install", side_effect=fail):
            rc, _, err = self.run_main(["install"])
        self.assertNotIn("error_details:", err)

    def test_help_overview_and_topic(self) -> None:
        rc, out, _ = self.run_main(["help"])
        self.assertEqual(rc, 0)
        self.assertIn("macdev add --impure git", out)

        rc, out, _ = self.run_main(["help", "add"])
        self.assertEqual(rc, 0)
        self.assertIn("--impure", out)

    def test_completion(self) -> None:
        rc, out, _ = self.run_main(["completion", "zsh"])
        self.assertEqual(rc, 0)
        self.assertTrue(out.startswith("#compdef macdev"))
        rc, out, _ = self.run_main(["completion", "bash"])
        self.assertIn("complete -F _macdev macdev", out)


class TestShell(CliTestCase):
    def test_shell_prepends_profile_to_path(self) -> None:
        self.run_main(["init"])
        self.run_main(["add", "rust"])
        os.environ["MACDEV_ACTIVE"] = "1"
        os.environ["SHELL"] = "/bin/zsh"

        with patch("macdev.cli.subprocess.call", return_value=0) as call:
            rc, out, _ = self.run_main(["shell"])

        self.assertEqual(rc, 0)
        self.assertNotIn("Ensuring environment is up to date", out)
        self.assertEqual(call.call_args.args[0], ["/bin/zsh"])
        env = call.call_args.kwargs["env"]
        self.assertTrue(env["PATH"].startswith(str(self.manager.profile.bin_dir.resolve()) + os.pathsep))
        self.assertEqual(env["MACDEV_ACTIVE"], "1")

    def test_shell_installs_first_outside_an_active_environment(self) -> None:
        self.store.init()
        with patch("macdev.cli.subprocess.call") as call:
            rc, out, err = self.run_main(["shell"])
        self.assertIn("Ensuring environment is up to date", out)
        # empty manifest leaves no profile to enter
        self.assertEqual(rc, 1)
        self.assertIn("Profile directory not found", err)
        call.assert_not_called()


class TestConfigCommand(CliTestCase):
    def test_set_and_show(self) -> None:
        rc, out, _ = self.run_main(["config", "set", "--brew-path", "/opt/homebrew/bin/brew"])
        self.assertEqual(rc, 0)
        self.assertEqual(out.strip(), str(self.root / "config.json"))

        rc, out, _ = self.run_main(["config", "show"])
        shown = json.loads(out)
        self.assertEqual(shown["brew_path"], "/opt/homebrew/bin/brew")
        self.assertIsNone(shown["global_manifest"])

        rc, out, _ = self.run_main(["config", "path"])
        self.assertEqual(out.strip(), str(self.root / "config.json"))


if __name__ == "__main__":
    unittest.main()
