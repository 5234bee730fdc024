from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

DEFAULT_LOCAL_SECRETS_TTL = 15 * 60
DEFAULT_LOCAL_SECRETS_MAX_BODY = 1024 * 1024


class ConfigError(ValueError):
    pass


def load_yaml(path: str) -> dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"config file does not exist: {path}")
    with p.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError("config root must be a mapping")
    return data


def require_keys(cfg: dict[str, Any], keys: list[str], where: str = "config") -> None:
    missing = [k for k in keys if not str(cfg.get(k, "")).strip()]
    if missing:
        raise ConfigError(f"{where} missing required keys: {', '.join(missing)}")


def optional_port(cfg: dict[str, Any], key: str) -> int | None:
    raw = cfg.get(key)
    if raw is None or str(raw).strip() == "":
        return None
    try:
        port = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be an integer") from exc
    if not 0 <= port <= 65535:
        raise ConfigError(f"{key} out of range: {port}")
    return port


def load_runner_config(path: str) -> dict[str, Any]:
    cfg = load_yaml(path)
    require_keys(cfg, ["project_id", "runner_name"], where="runner config")
    cfg.setdefault("log_level", "info")
    cfg.setdefault("local_secrets_ttl", DEFAULT_LOCAL_SECRETS_TTL)
    cfg.setdefault("local_secrets_max_body", DEFAULT_LOCAL_SECRETS_MAX_BODY)
    runtime_dir = str(cfg.get("runtime_dir") or "").strip()
    if runtime_dir:
        base_dir = Path(path).expanduser().resolve().parent
        runtime_path = Path(runtime_dir).expanduser()
        if not runtime_path.is_absolute():
            runtime_path = (base_dir / runtime_path).resolve()
        cfg["runtime_dir"] = str(runtime_path)
    else:
        cfg["runtime_dir"] = ""
    cfg["local_secrets_port"] = optional_port(cfg, "local_secrets_port")
    if cfg["local_secrets_port"] is not None:
        require_keys(cfg, ["local_secrets_allowed_origin"], where="runner config")
    return cfg
