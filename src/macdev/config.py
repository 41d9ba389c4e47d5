from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

APP_NAME = "macdev"
DEFAULT_BREW_PATH = "brew"

MANIFEST_FILENAME = "macdev.toml"
LOCK_FILENAME = "macdev.lock"
STATE_DIRNAME = ".macdev"
PROFILE_DIRNAME = "profile"
VENV_DIRNAME = "venv"
GLOBAL_MANIFEST_FILENAME = "macdev.toml"

ACTIVE_ENV_VAR = "MACDEV_ACTIVE"


@dataclass(frozen=True)
class Config:
    brew_path: str = DEFAULT_BREW_PATH
    global_manifest: str | None = None  # defaults to <user config dir>/macdev.toml


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("MACDEV_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path(APP_NAME) / "config.json"


def default_global_manifest_path() -> Path:
    return user_config_path(APP_NAME) / GLOBAL_MANIFEST_FILENAME


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return Config(**filtered)  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)
    return path


def apply_env_overrides(cfg: Config) -> Config:
    # Env overrides the config file; CLI flags are applied on top by the caller.
    brew_path = os.getenv("MACDEV_BREW") or cfg.brew_path
    global_manifest = os.getenv("MACDEV_GLOBAL_MANIFEST") or cfg.global_manifest
    return replace(cfg, brew_path=brew_path, global_manifest=global_manifest)


def global_manifest_path(cfg: Config) -> Path:
    if cfg.global_manifest:
        return Path(cfg.global_manifest).expanduser()
    return default_global_manifest_path()


def display_path(path: Path) -> str:
    home = str(Path.home())
    text = str(path)
    if text == home or text.startswith(home + os.sep):
        return "~" + text[len(home) :]
    return text
