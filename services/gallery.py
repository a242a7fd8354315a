from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from services.aggregator import aggregate
from services.models import Extension, NormalizationFailure, NormalizeResult
from services.normalizer import DEFAULT_OPENVSX_API, normalize_marketplace, normalize_openvsx
from services.registry_clients import FILTER_EXTENSION_NAME, FILTER_SEARCH_TEXT, MarketplaceClient, OpenVSXClient, RegistryClient
from services.response_cache import ResponseCache


_log = logging.getLogger("gallery")


# =========================
# errors
# =========================

class GalleryError(Exception):
    # Error with an HTTP status and a message safe to show the client
    code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(GalleryError):
    code = 400


class NotFoundError(GalleryError):
    code = 404


# =========================
# request helpers
# =========================

def find_criterion(body: Any, filter_type: int) -> Optional[Dict[str, Any]]:
    # First criterion of filters[0] with the given filterType
    if not isinstance(body, dict):
        return None
    filters = body.get("filters")
    if not isinstance(filters, list) or not filters or not isinstance(filters[0], dict):
        return None
    crit = filters[0].get("criteria")
    if not isinstance(crit, list):
        return None
    for c in crit:
        if isinstance(c, dict) and c.get("filterType") == filter_type:
            return c
    return None


def search_text_from_query(body: Any) -> str:
    c = find_criterion(body, FILTER_SEARCH_TEXT)
    v = c.get("value") if c else None
    return v.strip() if isinstance(v, str) else ""


def parse_identity(identity: Any) -> Tuple[str, str]:
    if not isinstance(identity, str):
        raise ValidationError("Invalid extension name format")
    parts = identity.strip().split(".")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ValidationError("Invalid extension name format")
    return parts[0], parts[1]


def build_envelope(extensions: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "results": [
            {
                "extensions": list(extensions),
                "resultMetadata": [
                    {"metadataType": "ResultCount", "metadataValue": str(len(extensions))},
                ],
            }
        ]
    }


def _keep_valid(results: Sequence[NormalizeResult]) -> List[Extension]:
    out: List[Extension] = []
    for r in results:
        if isinstance(r, NormalizationFailure):
            _log.debug("normalize_skipped source=%s reason=%s", r.source.value, r.reason)
            continue
        out.append(r)
    return out


@dataclass
class DownloadResult:
    provider: str
    response: requests.Response
    filename: str


# =========================
# service
# =========================

class GalleryService:
    """
    Search, detail and download flows over the Marketplace and Open VSX.

    Marketplace is the preferred source everywhere: its records win dedup, it
    is asked first for details and tried first for downloads. The service
    also owns the response cache for the process.
    """

    def __init__(
        self,
        marketplace: MarketplaceClient,
        openvsx: OpenVSXClient,
        cache: ResponseCache,
        openvsx_api_url: str = DEFAULT_OPENVSX_API,
    ) -> None:
        self.marketplace = marketplace
        self.openvsx = openvsx
        self.cache = cache
        self.openvsx_api_url = openvsx_api_url

    def close(self) -> None:
        self.cache.stop()
        self.marketplace.close()
        self.openvsx.close()

    # search

    def search(self, text: str) -> Dict[str, Any]:
        text = (text or "").strip()
        if not text:
            raise ValidationError("Missing search query")

        # both requests are in flight before either is awaited; workers are
        # per request, never shared with other searches
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="gallery-search") as pool:
            f_market = pool.submit(self.marketplace.search, text)
            f_ovsx = pool.submit(self.openvsx.search, text)
            market_raw = f_market.result()
            ovsx_raw = f_ovsx.result()

        market = _keep_valid([normalize_marketplace(r) for r in market_raw])
        ovsx = _keep_valid([normalize_openvsx(r, self.openvsx_api_url) for r in ovsx_raw])
        merged = aggregate(market + ovsx)

        _log.info(
            "search query=%r marketplace=%s openvsx=%s merged=%s",
            text,
            len(market),
            len(ovsx),
            len(merged),
        )
        return build_envelope([e.raw_wire for e in merged])

    def search_query(self, body: Any) -> Dict[str, Any]:
        return self.search(search_text_from_query(body))

    # detail

    def detail(self, identity: Any) -> Dict[str, Any]:
        publisher, name = parse_identity(identity)

        primary = self.marketplace.get_details(publisher, name)
        if primary is not None:
            _log.info("detail ext=%s.%s source=marketplace", publisher, name)
            return build_envelope([primary.payload])

        secondary = self.openvsx.get_details(publisher, name)
        if secondary is not None:
            ext = normalize_openvsx(secondary, self.openvsx_api_url)
            if isinstance(ext, Extension):
                _log.info("detail ext=%s.%s source=openvsx", publisher, name)
                return build_envelope([ext.raw_wire])
            _log.warning("detail_openvsx_unusable ext=%s.%s reason=%s", publisher, name, ext.reason)

        raise NotFoundError("Extension not found")

    def extension_query(self, body: Any) -> Dict[str, Any]:
        # without an extension-name criterion the query is a search
        c = find_criterion(body, FILTER_EXTENSION_NAME)
        if c is None:
            _log.info("extensionquery without extension name, delegating to search")
            return self.search_query(body)
        return self.detail(c.get("value"))

    # download

    def download_providers(self) -> List[RegistryClient]:
        return [self.marketplace, self.openvsx]

    def open_download(self, publisher: str, name: str, version: str) -> DownloadResult:
        """
        Open the VSIX stream from the first provider that can serve it.

        A provider is usable when the request went through and answered with a
        status in [200, 400). Redirects count as usable and are returned as-is:
        the client gets the provider's 3xx and Location, not a 200 for a body
        fetched from the redirect target.
        The caller owns the returned response and must close it.
        """
        ext_id = f"{publisher}.{name}"
        for idx, provider in enumerate(self.download_providers()):
            try:
                resp = provider.open_download(publisher, name, version)
            except requests.RequestException as exc:
                _log.warning("download_provider_failed ext=%s@%s provider=%s attempt=%s err=%s", ext_id, version, provider.name, idx, exc)
                continue

            if 200 <= resp.status_code < 400:
                _log.info("download ext=%s@%s provider=%s status=%s", ext_id, version, provider.name, resp.status_code)
                return DownloadResult(provider=provider.name, response=resp, filename=f"{name}-{version}.vsix")

            _log.warning("download_provider_failed ext=%s@%s provider=%s attempt=%s status=%s", ext_id, version, provider.name, idx, resp.status_code)
            resp.close()

        raise NotFoundError("VSIX file not found in any registry")
