from __future__ import annotations

import argparse
import hashlib
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests


DEFAULT_BASE_URL = "http://127.0.0.1:3000/gallery"

SEED_IDS = [
    "ms-python.python",
    "redhat.vscode-yaml",
]


@dataclass
class Check:
    name: str
    ok: bool
    status: int
    detail: str


def eprint(*a: Any) -> None:
    print(*a, file=sys.stderr)


def sha256_bytes(b: bytes) -> str:
    h = hashlib.sha256()
    h.update(b)
    return h.hexdigest()


def req(
    sess: requests.Session,
    method: str,
    url: str,
    *,
    expected: Tuple[int, ...],
    json_body: Optional[Dict[str, Any]] = None,
    stream: bool = False,
    timeout: int = 60,
) -> requests.Response:
    r = sess.request(method, url, json=json_body, stream=stream, timeout=timeout)
    if r.status_code not in expected:
        try:
            body = r.text[:1200]
        except (UnicodeDecodeError, requests.RequestException):
            body = "<non-text>"
        raise RuntimeError(f"{method} {url} -> {r.status_code}, expected {expected}. Body: {body}")
    return r


def post_json(sess: requests.Session, url: str, body: Dict[str, Any], expected: Tuple[int, ...] = (200,)) -> Dict[str, Any]:
    return req(sess, "POST", url, expected=expected, json_body=body).json()


def search_body(text: str) -> Dict[str, Any]:
    return {"filters": [{"criteria": [{"filterType": 10, "value": text}], "pageNumber": 1, "pageSize": 50}], "flags": 914}


def detail_body(ext_id: str) -> Dict[str, Any]:
    return {"filters": [{"criteria": [{"filterType": 7, "value": ext_id}], "pageNumber": 1, "pageSize": 1}], "flags": 914}


def envelope_extensions(resp_json: Dict[str, Any]) -> List[Dict[str, Any]]:
    results = resp_json.get("results")
    if not isinstance(results, list) or not results:
        raise RuntimeError("envelope: missing results")
    exts = results[0].get("extensions")
    if not isinstance(exts, list):
        raise RuntimeError("envelope: missing extensions list")

    meta = results[0].get("resultMetadata") or []
    counts = [m.get("metadataValue") for m in meta if isinstance(m, dict) and m.get("metadataType") == "ResultCount"]
    if counts != [str(len(exts))]:
        raise RuntimeError(f"envelope: ResultCount {counts} does not match {len(exts)} extensions")
    return [x for x in exts if isinstance(x, dict)]


def ext_id_of(ext: Dict[str, Any]) -> str:
    pub = ext.get("publisher") or {}
    return f"{pub.get('publisherName', '')}.{ext.get('extensionName', '')}".lower()


def pick_version(ext: Dict[str, Any]) -> str:
    versions = ext.get("versions")
    if not isinstance(versions, list) or not versions or not isinstance(versions[0], dict):
        raise RuntimeError("extension: missing versions")
    ver = str(versions[0].get("version") or "").strip()
    if not ver:
        raise RuntimeError("extension: empty version")
    return ver


def check_gallery_flow(sess: requests.Session, base_url: str, ext_id: str) -> List[Check]:
    checks: List[Check] = []
    base = base_url.rstrip("/")

    def ok(name: str, status: int, detail: str) -> None:
        checks.append(Check(name=name, ok=True, status=status, detail=detail))

    def bad(name: str, status: int, detail: str) -> None:
        checks.append(Check(name=name, ok=False, status=status, detail=detail))

    publisher, _, name = ext_id.partition(".")

    # 1) SEARCH
    surl = f"{base}/search"
    try:
        exts = envelope_extensions(post_json(sess, surl, search_body(name)))
        ids = [ext_id_of(e) for e in exts]
        if len(ids) != len(set(ids)):
            raise RuntimeError("duplicate extension ids in search results")
        ok("POST /search", 200, f"{len(exts)} results")
    except (requests.RequestException, RuntimeError, ValueError) as exc:
        bad("POST /search", 0, f"{surl} :: {exc}")

    # 2) DETAIL
    qurl = f"{base}/extensionquery"
    try:
        exts = envelope_extensions(post_json(sess, qurl, detail_body(ext_id)))
        if len(exts) != 1 or ext_id_of(exts[0]) != ext_id.lower():
            raise RuntimeError(f"expected exactly {ext_id}, got {[ext_id_of(e) for e in exts]}")
        version = pick_version(exts[0])
        ok("POST /extensionquery", 200, f"{ext_id}@{version}")
    except (requests.RequestException, RuntimeError, ValueError) as exc:
        bad("POST /extensionquery", 0, f"{qurl} :: {exc}")
        return checks

    # 3) DOWNLOAD
    durl = f"{base}/download/{publisher}/{name}/{version}"
    try:
        r = req(sess, "GET", durl, expected=(200,), stream=True)
        b = r.content
        if len(b) < 4 or b[:2] != b"PK":
            raise RuntimeError("downloaded bytes are not a VSIX/zip")
        disp = r.headers.get("Content-Disposition") or ""
        if "filename" not in disp.lower():
            raise RuntimeError(f"missing filename in Content-Disposition: {disp!r}")
        ok("GET /download", 200, f"{len(b)} bytes sha256={sha256_bytes(b)[:12]}…")
    except (requests.RequestException, RuntimeError) as exc:
        bad("GET /download", 0, f"{durl} :: {exc}")

    return checks


def print_report(title: str, checks: List[Check]) -> bool:
    print(f"\n--- {title} ---")
    ok_all = True
    for c in checks:
        flag = "OK" if c.ok else "FAIL"
        print(f"[{flag}] {c.name} (status={c.status}) {c.detail}")
        if not c.ok:
            ok_all = False
    return ok_all


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Search/detail/download flow checker for a running gallery proxy.")
    ap.add_argument("--base-url", default=DEFAULT_BASE_URL, help=f"Gallery base URL (default {DEFAULT_BASE_URL})")
    ap.add_argument("--ids", nargs="*", default=SEED_IDS, help="Extension ids (publisher.name) to check")
    args = ap.parse_args(argv)

    sess = requests.Session()

    overall_ok = True
    for ext_id in args.ids:
        if ext_id.count(".") != 1:
            eprint(f"ERROR bad extension id: {ext_id}")
            overall_ok = False
            continue
        checks = check_gallery_flow(sess, args.base_url, ext_id)
        overall_ok = print_report(ext_id, checks) and overall_ok

    return 0 if overall_ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
