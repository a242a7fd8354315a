from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

from services.models import (
    Extension,
    MarketplaceRawRecord,
    NormalizationFailure,
    NormalizeResult,
    OpenVSXRawRecord,
    Source,
    VersionInfo,
)


ASSET_ICON = "Microsoft.VisualStudio.Services.Icons.Default"
ASSET_DETAILS = "Microsoft.VisualStudio.Services.Content.Details"
ASSET_CHANGELOG = "Microsoft.VisualStudio.Services.Content.Changelog"
ASSET_MANIFEST = "Microsoft.VisualStudio.Code.Manifest"
ASSET_VSIX = "Microsoft.VisualStudio.Services.VSIXPackage"
ASSET_LICENSE = "Microsoft.VisualStudio.Services.Content.License"

PROPERTY_ENGINE = "Microsoft.VisualStudio.Code.Engine"
PROPERTY_PRE_RELEASE = "Microsoft.VisualStudio.Code.PreRelease"

STAT_INSTALL = "install"
STAT_AVERAGE_RATING = "averagerating"
STAT_RATING_COUNT = "ratingcount"

DEFAULT_OPENVSX_API = "https://open-vsx.org/api"

# stand-in for dates the registry did not report
DEFAULT_TIMESTAMP = "1970-01-01T00:00:00Z"

# Open VSX "files" keys -> Marketplace asset types
_OPENVSX_FILE_ASSETS = (
    ("download", ASSET_VSIX),
    ("manifest", ASSET_MANIFEST),
    ("readme", ASSET_DETAILS),
    ("changelog", ASSET_CHANGELOG),
    ("license", ASSET_LICENSE),
    ("icon", ASSET_ICON),
)


# =========================
# field helpers
# =========================

def _req_str(obj: Dict[str, Any], key: str) -> Optional[str]:
    v = obj.get(key)
    if not isinstance(v, str):
        return None
    s = v.strip()
    return s if s else None


def _opt_str(obj: Dict[str, Any], key: str, default: str = "") -> str:
    return _req_str(obj, key) or default


def _str_list(v: Any) -> List[str]:
    if not isinstance(v, list):
        return []
    out: List[str] = []
    for x in v:
        if isinstance(x, str) and x.strip():
            out.append(x.strip())
    return out


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def parse_timestamp(v: Any) -> Optional[datetime]:
    if not isinstance(v, str) or not v.strip():
        return None
    s = v.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        return None


def openvsx_download_url(api_url: str, publisher: str, name: str, version: str) -> str:
    # {api}/{namespace}/{name}/{version}/file/{name}-{version}.vsix
    base = api_url.rstrip("/")
    p, n, v = quote(publisher, safe=""), quote(name, safe=""), quote(version, safe="")
    return f"{base}/{p}/{n}/{v}/file/{n}-{v}.vsix"


# =========================
# Marketplace
# =========================

def _marketplace_asset_url(ver: Dict[str, Any]) -> Optional[str]:
    files = ver.get("files")
    if isinstance(files, list):
        for f in files:
            if not isinstance(f, dict) or f.get("assetType") != ASSET_VSIX:
                continue
            src = _req_str(f, "source")
            if src:
                return src

    for key in ("assetUri", "fallbackAssetUri"):
        base = _req_str(ver, key)
        if base:
            return f"{base.rstrip('/')}/{ASSET_VSIX}"
    return None


def _marketplace_versions(raw_versions: Any) -> List[VersionInfo]:
    if not isinstance(raw_versions, list):
        return []
    out: List[VersionInfo] = []
    for v in raw_versions:
        if not isinstance(v, dict):
            continue
        ver = _req_str(v, "version")
        asset = _marketplace_asset_url(v)
        if not ver or not asset:
            continue
        out.append(VersionInfo(version=ver, asset_url=asset, published_at=parse_timestamp(v.get("lastUpdated"))))
    return out


def _marketplace_statistics(raw_stats: Any) -> List[Tuple[str, Any]]:
    if not isinstance(raw_stats, list):
        return []
    out: List[Tuple[str, Any]] = []
    for s in raw_stats:
        if not isinstance(s, dict):
            continue
        metric = _req_str(s, "statisticName")
        if metric is None or "value" not in s:
            continue
        out.append((metric, s["value"]))
    return out


def normalize_marketplace(record: MarketplaceRawRecord) -> NormalizeResult:
    """
    Build an Extension from a Marketplace record.

    The Marketplace already speaks the wire schema the client expects, so the
    payload is kept as-is in `raw_wire`.
    """
    raw = record.payload
    if not isinstance(raw, dict):
        return NormalizationFailure(Source.MARKETPLACE, "record is not an object")

    pub = raw.get("publisher")
    publisher = _req_str(pub, "publisherName") if isinstance(pub, dict) else None
    if not publisher:
        return NormalizationFailure(Source.MARKETPLACE, "missing publisher")

    name = _req_str(raw, "extensionName")
    if not name:
        return NormalizationFailure(Source.MARKETPLACE, "missing extensionName")

    versions = _marketplace_versions(raw.get("versions"))
    if not versions:
        return NormalizationFailure(Source.MARKETPLACE, f"no usable versions for {publisher}.{name}")

    return Extension(
        publisher=publisher,
        name=name,
        display_name=_opt_str(raw, "displayName", name),
        description=_opt_str(raw, "shortDescription"),
        versions=tuple(versions),
        statistics=tuple(_marketplace_statistics(raw.get("statistics"))),
        source=Source.MARKETPLACE,
        raw_wire=raw,
    )


# =========================
# Open VSX
# =========================

def _openvsx_statistics(raw: Dict[str, Any]) -> List[Tuple[str, Any]]:
    out: List[Tuple[str, Any]] = []
    for key, metric in (
        ("downloadCount", STAT_INSTALL),
        ("averageRating", STAT_AVERAGE_RATING),
        ("reviewCount", STAT_RATING_COUNT),
    ):
        v = raw.get(key)
        if _is_number(v):
            out.append((metric, v))
    return out


def _openvsx_files(raw: Dict[str, Any], download_url: str) -> List[Dict[str, str]]:
    files = raw.get("files") if isinstance(raw.get("files"), dict) else {}
    out: List[Dict[str, str]] = []
    for key, asset_type in _OPENVSX_FILE_ASSETS:
        src = download_url if key == "download" else _req_str(files, key)
        if src:
            out.append({"assetType": asset_type, "source": src})
    return out


def _openvsx_properties(raw: Dict[str, Any]) -> List[Dict[str, str]]:
    props: List[Dict[str, str]] = []
    engines = raw.get("engines")
    if isinstance(engines, dict):
        engine = _req_str(engines, "vscode")
        if engine:
            props.append({"key": PROPERTY_ENGINE, "value": engine})
    if raw.get("preRelease") is True:
        props.append({"key": PROPERTY_PRE_RELEASE, "value": "true"})
    return props


def _openvsx_wire(
    raw: Dict[str, Any],
    publisher: str,
    name: str,
    version: str,
    display: str,
    desc: str,
    download_url: str,
    api_url: str,
    stats: List[Tuple[str, Any]],
) -> Dict[str, Any]:
    ts = _req_str(raw, "timestamp") or DEFAULT_TIMESTAMP
    version_uri = f"{api_url.rstrip('/')}/{quote(publisher, safe='')}/{quote(name, safe='')}/{quote(version, safe='')}"

    version_json: Dict[str, Any] = {
        "version": version,
        "flags": "validated",
        "lastUpdated": ts,
        "assetUri": version_uri,
        "fallbackAssetUri": version_uri,
        "files": _openvsx_files(raw, download_url),
        "properties": _openvsx_properties(raw),
    }
    # the Marketplace only reports targetPlatform for platform-specific builds
    tp = _req_str(raw, "targetPlatform")
    if tp and tp != "universal":
        version_json["targetPlatform"] = tp

    ns_display = _opt_str(raw, "namespaceDisplayName", publisher)
    return {
        "publisher": {
            "publisherId": publisher,
            "publisherName": publisher,
            "displayName": ns_display,
            "flags": "verified" if raw.get("verified") is True else "",
            "domain": None,
            "isDomainVerified": raw.get("verified") is True,
        },
        "extensionId": f"{publisher}.{name}",
        "extensionName": name,
        "displayName": display,
        "flags": "validated, public",
        "lastUpdated": ts,
        "publishedDate": ts,
        "releaseDate": ts,
        "shortDescription": desc,
        "versions": [version_json],
        "categories": _str_list(raw.get("categories")),
        "tags": _str_list(raw.get("tags")),
        "statistics": [{"statisticName": m, "value": v} for m, v in stats],
        "deploymentType": 0,
    }


def normalize_openvsx(record: OpenVSXRawRecord, api_url: str = DEFAULT_OPENVSX_API) -> NormalizeResult:
    """
    Build an Extension from an Open VSX search hit or detail document.

    Open VSX never produces a Marketplace-shaped record, so one is synthesized:
    every field the Marketplace schema carries is filled in, falling back to
    defaults when the registry left it out. The download URL comes from
    `files.download` when present, otherwise from the registry's file route.
    """
    raw = record.payload
    if not isinstance(raw, dict):
        return NormalizationFailure(Source.OPENVSX, "record is not an object")

    publisher = _req_str(raw, "namespace")
    if not publisher:
        return NormalizationFailure(Source.OPENVSX, "missing namespace")

    name = _req_str(raw, "name")
    if not name:
        return NormalizationFailure(Source.OPENVSX, "missing name")

    version = _req_str(raw, "version")
    if not version:
        return NormalizationFailure(Source.OPENVSX, f"missing version for {publisher}.{name}")

    files = raw.get("files") if isinstance(raw.get("files"), dict) else {}
    download_url = _req_str(files, "download") or openvsx_download_url(api_url, publisher, name, version)

    display = _opt_str(raw, "displayName", name)
    desc = _opt_str(raw, "description")
    stats = _openvsx_statistics(raw)

    return Extension(
        publisher=publisher,
        name=name,
        display_name=display,
        description=desc,
        versions=(VersionInfo(version=version, asset_url=download_url, published_at=parse_timestamp(raw.get("timestamp"))),),
        statistics=tuple(stats),
        source=Source.OPENVSX,
        raw_wire=_openvsx_wire(raw, publisher, name, version, display, desc, download_url, api_url, stats),
    )
