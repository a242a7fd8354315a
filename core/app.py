from __future__ import annotations

import json
import logging
import sys
import time
import traceback
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flask import Flask, Response, g, jsonify, request
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from core.config import AppConfig
from services.gallery import GalleryError, GalleryService
from services.registry_clients import MarketplaceClient, OpenVSXClient
from services.response_cache import ResponseCache


APP_VERSION = "1.0.0"


def _utc_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _truncate(v: Any, max_len: int) -> Any:
    if v is None:
        return None
    try:
        s = v if isinstance(v, str) else json.dumps(v, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        s = str(v)
    if len(s) <= max_len:
        return v
    return s[:max_len] + "…"


def _safe_headers() -> Dict[str, str]:
    out: Dict[str, str] = {}
    for k, v in request.headers.items():
        lk = k.lower()
        if lk in {"authorization", "cookie", "set-cookie"}:
            continue
        out[k] = v
    return out


def _request_path() -> str:
    return request.full_path[:-1] if request.full_path.endswith("?") else request.full_path


def _register_blueprints(app: Flask) -> None:
    from api.gallery import bp_gallery

    app.register_blueprint(bp_gallery, url_prefix="/gallery")


def _apply_common_headers(resp: Response) -> Response:
    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers["X-Request-Id"] = getattr(g, "request_id", "")
    return resp


def build_gallery_service(cfg: AppConfig) -> GalleryService:
    # One service (and one cache) per process
    cache = ResponseCache(default_ttl=cfg.cache_ttl, check_period=cfg.cache_check_period)
    return GalleryService(
        MarketplaceClient(cfg.marketplace_url, timeout=cfg.upstream_timeout),
        OpenVSXClient(cfg.openvsx_url, timeout=cfg.upstream_timeout),
        cache,
        openvsx_api_url=cfg.openvsx_url,
    )


def create_app(cfg: AppConfig, service: Optional[GalleryService] = None) -> Flask:
    app = Flask(__name__)

    if service is None:
        service = build_gallery_service(cfg)
        service.cache.start()
    app.extensions["gallery"] = service

    # Reverse proxy support (common: proto/host/for)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)  # type: ignore[method-assign]

    @app.before_request
    def _before_request() -> None:
        g.request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
        g._t0 = time.perf_counter()

    @app.after_request
    def _after_request(resp: Response) -> Response:
        dur_ms = int((time.perf_counter() - getattr(g, "_t0", time.perf_counter())) * 1000)

        rec = logging.LogRecord(
            name="access",
            level=logging.INFO,
            pathname=__file__,
            lineno=0,
            msg="%s %s status=%s ms=%s",
            args=(request.method, _request_path(), resp.status_code, dur_ms),
            exc_info=None,
        )
        rec.request_id = getattr(g, "request_id", None)
        rec.remote_addr = request.headers.get("X-Forwarded-For", request.remote_addr)
        rec.method = request.method
        rec.path = _request_path()
        rec.status = resp.status_code
        rec.duration_ms = dur_ms
        rec.ua = request.headers.get("User-Agent")

        if app.debug:
            rec.extra = {"query": request.args.to_dict(flat=True), "headers": _safe_headers()}

        logging.getLogger("access").handle(rec)
        return _apply_common_headers(resp)

    @app.errorhandler(Exception)
    def _handle_exception(e: Exception):
        if isinstance(e, (GalleryError, HTTPException)):
            status = int(e.code or 500)
        else:
            status = 500

        if isinstance(e, GalleryError):
            message = e.message
        elif isinstance(e, HTTPException):
            message = e.description or e.name
        else:
            message = "Internal Server Error"

        rec = logging.LogRecord(
            name="error",
            level=logging.ERROR if status >= 500 else logging.WARNING,
            pathname=__file__,
            lineno=0,
            msg="%s %s status=%s err=%s",
            args=(request.method, _request_path(), status, e.__class__.__name__),
            exc_info=sys.exc_info() if status >= 500 else None,
        )
        rec.request_id = getattr(g, "request_id", None)
        rec.method = request.method
        rec.path = _request_path()
        rec.status = status

        if app.debug:
            body_json = request.get_json(silent=True)
            rec.extra = {
                "query": request.args.to_dict(flat=True),
                "headers": _safe_headers(),
                "json": _truncate(body_json, 20000),
            }

        logging.getLogger("error").handle(rec)

        payload: Dict[str, Any] = {
            "error": True,
            "status": status,
            "message": message,
            "requestId": getattr(g, "request_id", None),
            "timestamp": _utc_iso(),
        }
        if app.debug and status >= 500:
            payload["traceback"] = _truncate("".join(traceback.format_exception(*sys.exc_info())), 20000)

        resp = jsonify(payload)
        resp.status_code = status
        return _apply_common_headers(resp)

    @app.get("/")
    def index():
        return jsonify({
            "status": "ok",
            "message": "Composite Extension Marketplace Proxy is running.",
            "version": APP_VERSION,
        }), 200

    @app.get("/health")
    def health():
        return jsonify({"ok": True, "timestamp": _utc_iso()}), 200

    _register_blueprints(app)

    logging.getLogger(__name__).info(
        "app_started marketplace=%s openvsx=%s cache_ttl=%s",
        cfg.marketplace_url,
        cfg.openvsx_url,
        cfg.cache_ttl,
    )
    return app
