# utils/config.py
import os
from pathlib import Path
import yaml
from dotenv import load_dotenv

from utils.logger import logger

def load_cfg(cfg_path: str | None = None, env_path: str | None = None):

    base_dir = Path(__file__).resolve().parents[1]

    cfg_file = Path(cfg_path) if cfg_path else (base_dir / "config.yaml")

    load_dotenv(Path(env_path) if env_path else (base_dir / ".env"))

    with open(cfg_file, "r", encoding="utf-8") as f:
        raw_cfg = yaml.safe_load(f) or {}

    cfg = resolve_env(raw_cfg)

    if contains_production(cfg):
        logger.warning("⚠️ Production network selected!!! Orders will hit the live venue.")

    return cfg


def resolve_env(obj):
    """Replace "${VAR}" string leaves with the environment value ("" when unset)."""
    if isinstance(obj, dict):
        return {k: resolve_env(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [resolve_env(v) for v in obj]
    if isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
        varname = obj[2:-1]
        return os.getenv(varname, "")
    return obj


def contains_production(obj):
    if isinstance(obj, dict):
        for k, v in obj.items():
            if k == "network" and str(v).lower() == "production":
                return True
            if contains_production(v):
                return True
    elif isinstance(obj, list):
        return any(contains_production(v) for v in obj)
    return False
