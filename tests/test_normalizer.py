"""Tests for Marketplace and Open VSX record normalization."""
from __future__ import annotations

from datetime import datetime, timezone

from conftest import OPENVSX_API, marketplace_record, openvsx_record
from services.models import Extension, MarketplaceRawRecord, NormalizationFailure, OpenVSXRawRecord, Source
from services.normalizer import (
    ASSET_VSIX,
    DEFAULT_TIMESTAMP,
    normalize_marketplace,
    normalize_openvsx,
    openvsx_download_url,
    parse_timestamp,
)


# Top-level fields a Marketplace extensionquery record carries with the query flags used upstream
WIRE_FIELDS = {
    "publisher",
    "extensionId",
    "extensionName",
    "displayName",
    "flags",
    "lastUpdated",
    "publishedDate",
    "releaseDate",
    "shortDescription",
    "versions",
    "categories",
    "tags",
    "statistics",
    "deploymentType",
}
PUBLISHER_FIELDS = {"publisherId", "publisherName", "displayName", "flags", "domain", "isDomainVerified"}
VERSION_FIELDS = {"version", "flags", "lastUpdated", "assetUri", "fallbackAssetUri", "files", "properties"}


# ---------------------------------------------------------------------------
# Marketplace
# ---------------------------------------------------------------------------


def test_marketplace_record_is_kept_verbatim():
    raw = marketplace_record("ms-python", "python", "2024.1.0")
    ext = normalize_marketplace(MarketplaceRawRecord(raw))

    assert isinstance(ext, Extension)
    assert ext.publisher == "ms-python"
    assert ext.name == "python"
    assert ext.source is Source.MARKETPLACE
    assert ext.raw_wire is raw
    assert ext.identity_key == "ms-python.python"
    assert ext.statistics == (("install", 1000),)


def test_marketplace_version_asset_url_prefers_vsix_file():
    ext = normalize_marketplace(MarketplaceRawRecord(marketplace_record("a", "b", "1.2.3")))

    assert isinstance(ext, Extension)
    (v,) = ext.versions
    assert v.version == "1.2.3"
    assert v.asset_url == "https://cdn.example/a/b/1.2.3/vsix"
    assert v.published_at == datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)


def test_marketplace_version_falls_back_to_asset_uri():
    raw = marketplace_record("a", "b")
    raw["versions"][0].pop("files")
    ext = normalize_marketplace(MarketplaceRawRecord(raw))

    assert isinstance(ext, Extension)
    assert ext.versions[0].asset_url == f"https://cdn.example/a/b/1.0.0/{ASSET_VSIX}"


def test_marketplace_missing_mandatory_fields_fail():
    no_pub = marketplace_record("a", "b")
    no_pub["publisher"] = {}
    no_name = marketplace_record("a", "b")
    del no_name["extensionName"]
    no_versions = marketplace_record("a", "b", versions=[])

    for raw in (no_pub, no_name, no_versions):
        res = normalize_marketplace(MarketplaceRawRecord(raw))
        assert isinstance(res, NormalizationFailure)
        assert res.source is Source.MARKETPLACE


def test_marketplace_non_object_fails():
    res = normalize_marketplace(MarketplaceRawRecord(["not", "a", "dict"]))  # type: ignore[arg-type]
    assert isinstance(res, NormalizationFailure)


# ---------------------------------------------------------------------------
# Open VSX
# ---------------------------------------------------------------------------


def test_openvsx_maps_fields_to_canonical_model():
    raw = openvsx_record("redhat", "java", "1.26.0", averageRating=4.5, reviewCount=12)
    ext = normalize_openvsx(OpenVSXRawRecord(raw), OPENVSX_API)

    assert isinstance(ext, Extension)
    assert ext.publisher == "redhat"
    assert ext.name == "java"
    assert ext.display_name == "Java (Open VSX)"
    assert ext.description == "from open vsx"
    assert ext.source is Source.OPENVSX
    assert len(ext.versions) == 1
    assert ext.versions[0].version == "1.26.0"
    assert ext.versions[0].asset_url == raw["files"]["download"]
    assert ext.statistics == (("install", 42), ("averagerating", 4.5), ("ratingcount", 12))


def test_openvsx_wire_matches_marketplace_schema():
    ext = normalize_openvsx(OpenVSXRawRecord(openvsx_record("foo", "bar")), OPENVSX_API)
    assert isinstance(ext, Extension)
    wire = ext.raw_wire

    assert set(wire) == WIRE_FIELDS
    assert set(wire["publisher"]) == PUBLISHER_FIELDS
    assert wire["publisher"]["publisherName"] == "foo"
    assert wire["extensionName"] == "bar"
    assert wire["extensionId"] == "foo.bar"
    assert wire["statistics"] == [{"statisticName": "install", "value": 42}]

    (ver,) = wire["versions"]
    assert set(ver) == VERSION_FIELDS
    vsix = [f["source"] for f in ver["files"] if f["assetType"] == ASSET_VSIX]
    assert vsix == [ext.versions[0].asset_url]


def test_openvsx_wire_does_not_leak_source():
    ext = normalize_openvsx(OpenVSXRawRecord(openvsx_record("foo", "bar")), OPENVSX_API)
    assert isinstance(ext, Extension)
    assert "source" not in ext.raw_wire
    assert "namespace" not in ext.raw_wire


def test_openvsx_minimal_record_gets_defaults():
    raw = {"namespace": "foo", "name": "bar", "version": "0.1.0"}
    ext = normalize_openvsx(OpenVSXRawRecord(raw), OPENVSX_API)

    assert isinstance(ext, Extension)
    assert ext.display_name == "bar"
    assert ext.description == ""
    assert ext.statistics == ()
    assert ext.versions[0].asset_url == f"{OPENVSX_API}/foo/bar/0.1.0/file/bar-0.1.0.vsix"
    assert ext.versions[0].published_at is None

    wire = ext.raw_wire
    assert set(wire) == WIRE_FIELDS
    assert wire["statistics"] == []
    assert wire["tags"] == []
    assert wire["categories"] == []
    assert wire["lastUpdated"] == DEFAULT_TIMESTAMP
    assert wire["versions"][0]["properties"] == []


def test_openvsx_engine_and_platform_properties():
    raw = openvsx_record("foo", "bar", engines={"vscode": "^1.80.0"}, preRelease=True, targetPlatform="linux-x64")
    ext = normalize_openvsx(OpenVSXRawRecord(raw), OPENVSX_API)

    assert isinstance(ext, Extension)
    ver = ext.raw_wire["versions"][0]
    assert {"key": "Microsoft.VisualStudio.Code.Engine", "value": "^1.80.0"} in ver["properties"]
    assert {"key": "Microsoft.VisualStudio.Code.PreRelease", "value": "true"} in ver["properties"]
    assert ver["targetPlatform"] == "linux-x64"


def test_openvsx_universal_platform_is_omitted():
    raw = openvsx_record("foo", "bar", targetPlatform="universal")
    ext = normalize_openvsx(OpenVSXRawRecord(raw), OPENVSX_API)
    assert isinstance(ext, Extension)
    assert "targetPlatform" not in ext.raw_wire["versions"][0]


def test_openvsx_missing_mandatory_fields_fail():
    for missing in ("namespace", "name", "version"):
        raw = openvsx_record("foo", "bar")
        raw[missing] = "  "
        res = normalize_openvsx(OpenVSXRawRecord(raw), OPENVSX_API)
        assert isinstance(res, NormalizationFailure)
        assert res.source is Source.OPENVSX
        assert missing in res.reason


def test_openvsx_is_pure():
    raw = openvsx_record("foo", "bar")
    a = normalize_openvsx(OpenVSXRawRecord(raw), OPENVSX_API)
    b = normalize_openvsx(OpenVSXRawRecord(raw), OPENVSX_API)
    assert a == b
    assert isinstance(a, Extension) and isinstance(b, Extension)
    assert a.raw_wire == b.raw_wire


def test_download_url_quotes_segments():
    url = openvsx_download_url("https://x/api/", "my ns", "ext", "1.0.0")
    assert url == "https://x/api/my%20ns/ext/1.0.0/file/ext-1.0.0.vsix"


def test_parse_timestamp():
    assert parse_timestamp("2024-01-02T03:04:05Z") == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert parse_timestamp("garbage") is None
    assert parse_timestamp(None) is None
