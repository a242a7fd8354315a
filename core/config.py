from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict


DEFAULT_MARKETPLACE_URL = "https://marketplace.visualstudio.com/_apis/public/gallery"
DEFAULT_OPENVSX_URL = "https://open-vsx.org/api"


# =========================
# env helpers
# =========================

def _env_str(name: str, default: str = "") -> str:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip()


def _env_bool(name: str, default: bool = False) -> bool:
    v = (os.getenv(name) or "").strip().lower()
    if not v:
        return default
    return v in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    v = _env_str(name)
    if not v:
        return default
    try:
        return float(v)
    except ValueError:
        logging.getLogger(__name__).warning("bad_env_value name=%s value=%r, using %s", name, v, default)
        return default


# =========================
# config
# =========================

@dataclass(frozen=True)
class AppConfig:
    marketplace_url: str
    openvsx_url: str
    upstream_timeout: float
    cache_ttl: float
    cache_check_period: float
    log_level: str
    json_logs: bool

    @staticmethod
    def from_env() -> "AppConfig":
        marketplace_url = _env_str("MARKETPLACE_URL", DEFAULT_MARKETPLACE_URL).rstrip("/")
        openvsx_url = _env_str("OPENVSX_URL", DEFAULT_OPENVSX_URL).rstrip("/")
        log_level = _env_str("LOG_LEVEL", "INFO").upper()
        json_logs = _env_bool("JSON_LOGS", False)

        cache_ttl = _env_float("CACHE_TTL", 3600.0)
        # sweep must run more often than entries expire
        cache_check_period = min(_env_float("CACHE_CHECK_PERIOD", 120.0), cache_ttl)

        return AppConfig(
            marketplace_url=marketplace_url or DEFAULT_MARKETPLACE_URL,
            openvsx_url=openvsx_url or DEFAULT_OPENVSX_URL,
            upstream_timeout=_env_float("UPSTREAM_TIMEOUT", 15.0),
            cache_ttl=cache_ttl,
            cache_check_period=cache_check_period,
            log_level=log_level,
            json_logs=json_logs,
        )


# =========================
# logging
# =========================

class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in ("request_id", "method", "path", "status", "duration_ms"):
            val = getattr(record, key, None)
            if val is not None:
                payload[key] = val
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def setup_logging(cfg: AppConfig) -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, cfg.log_level, logging.INFO))

    # reset handlers (idempotent setup)
    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    if cfg.json_logs:
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )

    root.addHandler(handler)

    # sane defaults for noisy libs
    logging.getLogger("werkzeug").setLevel(logging.INFO)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
