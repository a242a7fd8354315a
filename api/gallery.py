from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Iterator

from flask import Blueprint, Response, current_app, g, request

from services.gallery import DownloadResult, GalleryService
from services.response_cache import generate_key


bp_gallery = Blueprint("gallery_api", __name__)

CHUNK_SIZE = 64 * 1024

_ALLOWED_ORIGINS = {"vscode-file://vscode-app"}
_ALLOWED_METHODS = "GET, POST, OPTIONS"

_log = logging.getLogger("gallery")


def _service() -> GalleryService:
    return current_app.extensions["gallery"]


def _get_cors_origin() -> str:
    origin = (request.headers.get("Origin") or "").strip()
    return origin if origin in _ALLOWED_ORIGINS else ""


def _apply_cors_headers(resp: Response) -> Response:
    origin = _get_cors_origin()
    if not origin:
        return resp

    resp.headers["Access-Control-Allow-Origin"] = origin
    resp.headers["Vary"] = "Origin"
    resp.headers["Access-Control-Allow-Methods"] = _ALLOWED_METHODS
    resp.headers["Access-Control-Max-Age"] = "86400"

    req_hdrs = (request.headers.get("Access-Control-Request-Headers") or "").strip()
    resp.headers["Access-Control-Allow-Headers"] = req_hdrs or "*"
    return resp


@bp_gallery.after_request
def _gallery_after_request(resp: Response) -> Response:
    return _apply_cors_headers(resp)


@bp_gallery.route("/<path:_any>", methods=["OPTIONS"], strict_slashes=False)
def _gallery_preflight(_any: str) -> Response:
    return Response("", status=204)


def _json_text(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def _cached_json(compute: Callable[[Any], Dict[str, Any]]) -> Response:
    # Serve from cache, or compute, store and serve. Errors are never cached.
    svc = _service()
    body = request.get_json(silent=True)
    key = generate_key(request.path, request.method, body, request.args.to_dict(flat=True))

    hit = svc.cache.get(key)
    if hit is not None:
        _log.info("cache_hit reqId=%s path=%s", getattr(g, "request_id", None), request.path)
        return Response(hit, status=200, mimetype="application/json")

    _log.info("cache_miss reqId=%s path=%s", getattr(g, "request_id", None), request.path)
    text = _json_text(compute(body))
    svc.cache.set(key, text)
    return Response(text, status=200, mimetype="application/json")


@bp_gallery.post("/search")
def search() -> Response:
    return _cached_json(_service().search_query)


@bp_gallery.post("/extensionquery")
def extensionquery() -> Response:
    return _cached_json(_service().extension_query)


def _has_filename(disposition: str) -> bool:
    return "filename" in disposition.lower()


def _download_headers(result: DownloadResult) -> Dict[str, str]:
    up = result.response.headers
    headers: Dict[str, str] = {}

    headers["Content-Type"] = up.get("Content-Type") or "application/octet-stream"

    disp = (up.get("Content-Disposition") or "").strip()
    headers["Content-Disposition"] = disp if _has_filename(disp) else f'attachment; filename="{result.filename}"'

    # requests decodes content-encoding while streaming, so the upstream
    # length is only accurate for identity bodies
    length = up.get("Content-Length")
    if length and not up.get("Content-Encoding"):
        headers["Content-Length"] = str(length)

    if 300 <= result.response.status_code < 400:
        location = up.get("Location")
        if location:
            headers["Location"] = location

    return headers


@bp_gallery.get("/download/<publisher>/<name>/<version>")
def download(publisher: str, name: str, version: str) -> Response:
    # Relays the provider's status: 200 with the VSIX body, or its 3xx with Location
    result = _service().open_download(publisher, name, version)
    upstream = result.response

    def _relay() -> Iterator[bytes]:
        try:
            for chunk in upstream.iter_content(chunk_size=CHUNK_SIZE):
                if chunk:
                    yield chunk
        finally:
            upstream.close()

    resp = Response(_relay(), status=upstream.status_code, headers=_download_headers(result))
    # client disconnects close the response; drop the upstream stream with it
    resp.call_on_close(upstream.close)
    return resp
