import copy
import os
import tomllib
from pathlib import Path

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"


def deep_update(base: dict, override: dict) -> dict:
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            deep_update(base[k], v)
        else:
            base[k] = v
    return base


def rpc_url(cfg: dict) -> str:
    """Primary JSON-RPC endpoint: RPC_URL env, else docker or local host from config."""
    if url := os.getenv("RPC_URL"):
        return url
    r = cfg["rippled"]
    host = r["docker"] if Path("/.dockerenv").is_file() else r["local"]
    host = os.getenv("RIPPLED_IP", host)
    return f"http://{host}:{r['rpc_port']}"


def endpoint_urls(cfg: dict) -> list[str]:
    return [rpc_url(cfg), *cfg["rippled"].get("endpoints", [])]


def load_config(path: str | Path | None = None, overrides: dict | None = None) -> dict:
    """Read the packaged defaults, then a user config file (PTX_CONFIG or `path`), then overrides."""
    cfg = tomllib.loads(config_file.read_text())
    user = path or os.getenv("PTX_CONFIG")
    if user:
        deep_update(cfg, tomllib.loads(Path(user).read_text()))
    if overrides:
        deep_update(cfg, copy.deepcopy(overrides))
    if not cfg["generation"].get("workers"):
        cfg["generation"]["workers"] = os.cpu_count() or 1
    return cfg
