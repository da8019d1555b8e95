import os
import tomllib
from pathlib import Path
from typing import Any

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"

# Environment variable -> (section, key)
ENV_OVERRIDES = {
    "STAKEPOP_URL": ("chain", "url"),
    "STAKEPOP_FUNDER": ("funding", "funder_uri"),
}


def deep_update(base: dict, override: dict) -> dict:
    """Recursively merge override dict into base dict."""
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            deep_update(base[k], v)
        else:
            base[k] = v
    return base


def load_config(path: str | Path | None = None, overrides: dict[str, Any] | None = None) -> dict[str, Any]:
    """Packaged defaults, then an optional TOML file, then the environment, then overrides.

    Overrides whose value is None are ignored so unset CLI flags fall through.
    """
    cfg = tomllib.loads(config_file.read_text())
    if path is not None:
        deep_update(cfg, tomllib.loads(Path(path).read_text()))

    for var, (section, key) in ENV_OVERRIDES.items():
        if (value := os.getenv(var)) is not None:
            cfg.setdefault(section, {})[key] = value

    if overrides:
        deep_update(cfg, _drop_none(overrides))
    return cfg


def _drop_none(d: dict) -> dict:
    return {k: _drop_none(v) if isinstance(v, dict) else v for k, v in d.items() if v is not None}
