"""Shared fixtures: fake registries, fake upstream streams, a controllable clock."""
from __future__ import annotations

from typing import Any, Dict, Iterator, List, Optional, Union

import pytest
import requests

from core.app import create_app
from core.config import AppConfig
from services.gallery import GalleryService
from services.models import MarketplaceRawRecord, OpenVSXRawRecord
from services.response_cache import ResponseCache


OPENVSX_API = "https://open-vsx.example/api"


def marketplace_record(publisher: str, name: str, version: str = "1.0.0", **extra: Any) -> Dict[str, Any]:
    asset_uri = f"https://cdn.example/{publisher}/{name}/{version}"
    rec: Dict[str, Any] = {
        "publisher": {"publisherId": f"id-{publisher}", "publisherName": publisher, "displayName": publisher.title()},
        "extensionId": f"guid-{publisher}-{name}",
        "extensionName": name,
        "displayName": f"{name.title()} (Marketplace)",
        "shortDescription": "from the marketplace",
        "versions": [
            {
                "version": version,
                "lastUpdated": "2024-03-01T10:00:00.000Z",
                "assetUri": asset_uri,
                "fallbackAssetUri": asset_uri,
                "files": [
                    {"assetType": "Microsoft.VisualStudio.Services.VSIXPackage", "source": f"{asset_uri}/vsix"},
                ],
            }
        ],
        "statistics": [{"statisticName": "install", "value": 1000}],
    }
    rec.update(extra)
    return rec


def openvsx_record(namespace: str, name: str, version: str = "1.0.0", **extra: Any) -> Dict[str, Any]:
    rec: Dict[str, Any] = {
        "namespace": namespace,
        "name": name,
        "version": version,
        "displayName": f"{name.title()} (Open VSX)",
        "description": "from open vsx",
        "timestamp": "2024-02-01T09:30:00.123456Z",
        "downloadCount": 42,
        "files": {
            "download": f"{OPENVSX_API}/{namespace}/{name}/{version}/file/{namespace}.{name}-{version}.vsix",
            "icon": f"{OPENVSX_API}/{namespace}/{name}/{version}/file/icon.png",
        },
    }
    rec.update(extra)
    return rec


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUpstream:
    """Stand-in for a streaming requests.Response."""

    def __init__(self, status_code: int = 200, body: bytes = b"", headers: Optional[Dict[str, str]] = None) -> None:
        self.status_code = status_code
        self.body = body
        self.headers = dict(headers or {})
        self.closed = False
        self.chunks_read = 0

    def iter_content(self, chunk_size: int = 1) -> Iterator[bytes]:
        for i in range(0, len(self.body), chunk_size):
            self.chunks_read += 1
            yield self.body[i : i + chunk_size]

    def close(self) -> None:
        self.closed = True


DownloadOutcome = Union[FakeUpstream, Exception]


class FakeRegistry:
    """Registry client double that records every call."""

    def __init__(
        self,
        name: str,
        search_results: Optional[List[Any]] = None,
        details: Optional[Dict[str, Any]] = None,
        downloads: Optional[List[DownloadOutcome]] = None,
    ) -> None:
        self.name = name
        self.search_results = search_results or []
        self.details = details or {}
        self.downloads = downloads or []
        self.calls: List[tuple] = []

    def search(self, text: str) -> List[Any]:
        self.calls.append(("search", text))
        return list(self.search_results)

    def get_details(self, publisher: str, name: str) -> Any:
        self.calls.append(("details", publisher, name))
        return self.details.get(f"{publisher}.{name}")

    def open_download(self, publisher: str, name: str, version: str) -> FakeUpstream:
        self.calls.append(("download", publisher, name, version))
        if not self.downloads:
            raise requests.ConnectionError(f"{self.name} unreachable")
        outcome = self.downloads.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self) -> None:
        pass


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> ResponseCache:
    return ResponseCache(default_ttl=3600, check_period=120, clock=clock)


@pytest.fixture
def marketplace() -> FakeRegistry:
    return FakeRegistry("marketplace")


@pytest.fixture
def openvsx() -> FakeRegistry:
    return FakeRegistry("openvsx")


@pytest.fixture
def service(marketplace: FakeRegistry, openvsx: FakeRegistry, cache: ResponseCache) -> Iterator[GalleryService]:
    svc = GalleryService(marketplace, openvsx, cache, openvsx_api_url=OPENVSX_API)  # type: ignore[arg-type]
    yield svc
    svc.close()


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(
        marketplace_url="https://marketplace.example/_apis/public/gallery",
        openvsx_url=OPENVSX_API,
        upstream_timeout=5.0,
        cache_ttl=3600.0,
        cache_check_period=120.0,
        log_level="DEBUG",
        json_logs=False,
    )


@pytest.fixture
def app(app_config: AppConfig, service: GalleryService):
    flask_app = create_app(app_config, service=service)
    flask_app.config.update(TESTING=True)
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


def mk_marketplace(*records: Dict[str, Any]) -> List[MarketplaceRawRecord]:
    return [MarketplaceRawRecord(r) for r in records]


def mk_openvsx(*records: Dict[str, Any]) -> List[OpenVSXRawRecord]:
    return [OpenVSXRawRecord(r) for r in records]
