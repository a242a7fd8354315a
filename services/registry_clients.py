from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from core.config import DEFAULT_MARKETPLACE_URL, DEFAULT_OPENVSX_URL
from services.models import MarketplaceRawRecord, OpenVSXRawRecord
from services.normalizer import openvsx_download_url


FLAG_INCLUDE_FILES = 0x2
FLAG_INCLUDE_VERSION_PROPERTIES = 0x10
FLAG_INCLUDE_ASSET_URI = 0x80
FLAG_INCLUDE_STATISTICS = 0x100
FLAG_INCLUDE_LATEST_VERSION_ONLY = 0x200

QUERY_FLAGS = (
    FLAG_INCLUDE_FILES
    | FLAG_INCLUDE_VERSION_PROPERTIES
    | FLAG_INCLUDE_ASSET_URI
    | FLAG_INCLUDE_STATISTICS
    | FLAG_INCLUDE_LATEST_VERSION_ONLY
)

FILTER_EXTENSION_NAME = 7
FILTER_TARGET = 8
FILTER_SEARCH_TEXT = 10

TARGET_VSCODE = "Microsoft.VisualStudio.Code"

SORT_NONE = 0
SORT_RELEVANCE = 1

SEARCH_PAGE_SIZE = 50

_MARKETPLACE_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json; api-version=3.0-preview.1",
    "X-Market-Client-Id": "VSCode",
}


def _q(s: str) -> str:
    return quote(s, safe="")


class RegistryClient(ABC):
    """
    Base for one upstream registry.

    Search and detail calls never raise: any transport, status or parse
    problem is logged and reported as an empty result. `open_download` is the
    exception; it returns the live streaming response or raises
    `requests.RequestException` so the caller can decide about fallback.
    """

    name = "registry"

    def __init__(self, base_url: str, timeout: float = 15.0, session: Optional[requests.Session] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        self._log = logging.getLogger(f"registry.{self.name}")

    def close(self) -> None:
        self._session.close()

    @abstractmethod
    def download_url(self, publisher: str, name: str, version: str) -> str:
        ...

    def open_download(self, publisher: str, name: str, version: str) -> requests.Response:
        # redirects are handed back to the caller, not chased
        return self._session.get(
            self.download_url(publisher, name, version),
            stream=True,
            allow_redirects=False,
            timeout=self.timeout,
        )


class MarketplaceClient(RegistryClient):
    name = "marketplace"

    def __init__(self, base_url: str = DEFAULT_MARKETPLACE_URL, timeout: float = 15.0, session: Optional[requests.Session] = None) -> None:
        super().__init__(base_url, timeout=timeout, session=session)

    def _query_body(self, filter_type: int, value: str, page_size: int, sort_by: int) -> Dict[str, Any]:
        return {
            "filters": [
                {
                    "criteria": [
                        {"filterType": filter_type, "value": value},
                        {"filterType": FILTER_TARGET, "value": TARGET_VSCODE},
                    ],
                    "pageNumber": 1,
                    "pageSize": page_size,
                    "sortBy": sort_by,
                    "sortOrder": 0,
                }
            ],
            "flags": QUERY_FLAGS,
        }

    def _extensionquery(self, body: Dict[str, Any]) -> List[Dict[str, Any]]:
        url = f"{self.base_url}/extensionquery"
        r = self._session.post(url, json=body, headers=_MARKETPLACE_HEADERS, timeout=self.timeout)
        r.raise_for_status()
        j = r.json()
        results = j.get("results") if isinstance(j, dict) else None
        if not isinstance(results, list) or not results or not isinstance(results[0], dict):
            return []
        exts = results[0].get("extensions")
        if not isinstance(exts, list):
            return []
        return [x for x in exts if isinstance(x, dict)]

    def search(self, text: str) -> List[MarketplaceRawRecord]:
        body = self._query_body(FILTER_SEARCH_TEXT, text, SEARCH_PAGE_SIZE, SORT_RELEVANCE)
        try:
            exts = self._extensionquery(body)
        except (requests.RequestException, ValueError) as exc:
            self._log.warning("marketplace_search_failed query=%r err=%s", text, exc)
            return []
        return [MarketplaceRawRecord(x) for x in exts]

    def get_details(self, publisher: str, name: str) -> Optional[MarketplaceRawRecord]:
        body = self._query_body(FILTER_EXTENSION_NAME, f"{publisher}.{name}", 1, SORT_NONE)
        try:
            exts = self._extensionquery(body)
        except (requests.RequestException, ValueError) as exc:
            self._log.warning("marketplace_details_failed ext=%s.%s err=%s", publisher, name, exc)
            return None
        return MarketplaceRawRecord(exts[0]) if exts else None

    def download_url(self, publisher: str, name: str, version: str) -> str:
        return f"{self.base_url}/publishers/{_q(publisher)}/vsextensions/{_q(name)}/{_q(version)}/vspackage"


class OpenVSXClient(RegistryClient):
    name = "openvsx"

    def __init__(self, base_url: str = DEFAULT_OPENVSX_URL, timeout: float = 15.0, session: Optional[requests.Session] = None) -> None:
        super().__init__(base_url, timeout=timeout, session=session)

    def search(self, text: str) -> List[OpenVSXRawRecord]:
        url = f"{self.base_url}/-/search"
        try:
            r = self._session.get(url, params={"query": text, "size": SEARCH_PAGE_SIZE}, timeout=self.timeout)
            r.raise_for_status()
            j = r.json()
        except (requests.RequestException, ValueError) as exc:
            self._log.warning("openvsx_search_failed query=%r err=%s", text, exc)
            return []
        exts = j.get("extensions") if isinstance(j, dict) else None
        if not isinstance(exts, list):
            return []
        return [OpenVSXRawRecord(x) for x in exts if isinstance(x, dict)]

    def get_details(self, publisher: str, name: str) -> Optional[OpenVSXRawRecord]:
        url = f"{self.base_url}/{_q(publisher)}/{_q(name)}"
        try:
            r = self._session.get(url, timeout=self.timeout)
            if r.status_code == 404:
                self._log.info("openvsx_details_not_found ext=%s.%s", publisher, name)
                return None
            r.raise_for_status()
            j = r.json()
        except (requests.RequestException, ValueError) as exc:
            self._log.warning("openvsx_details_failed ext=%s.%s err=%s", publisher, name, exc)
            return None
        if not isinstance(j, dict) or j.get("error"):
            return None
        return OpenVSXRawRecord(j)

    def download_url(self, publisher: str, name: str, version: str) -> str:
        return openvsx_download_url(self.base_url, publisher, name, version)
