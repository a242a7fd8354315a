from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple, Union


class Source(enum.Enum):
    # Registry an extension record came from
    MARKETPLACE = "marketplace"
    OPENVSX = "openvsx"


@dataclass(frozen=True)
class MarketplaceRawRecord:
    # One entry of results[0].extensions from the Marketplace extensionquery API
    payload: Dict[str, Any]

    source = Source.MARKETPLACE


@dataclass(frozen=True)
class OpenVSXRawRecord:
    # One search hit or detail document from the Open VSX API
    payload: Dict[str, Any]

    source = Source.OPENVSX


RawRecord = Union[MarketplaceRawRecord, OpenVSXRawRecord]


@dataclass(frozen=True)
class VersionInfo:
    version: str
    asset_url: str
    published_at: Optional[datetime] = None


@dataclass(frozen=True)
class Extension:
    """
    Canonical extension record.

    `raw_wire` is the record in Marketplace wire shape and is what gets sent to
    the client; the other fields exist for dedup and inspection. `source` is
    provenance only and never appears on the wire.
    """

    publisher: str
    name: str
    display_name: str
    description: str
    versions: Tuple[VersionInfo, ...]
    statistics: Tuple[Tuple[str, Any], ...]
    source: Source
    raw_wire: Dict[str, Any] = field(compare=False, repr=False)

    @property
    def identity_key(self) -> str:
        return f"{self.publisher}.{self.name}".lower()


@dataclass(frozen=True)
class NormalizationFailure:
    source: Source
    reason: str


NormalizeResult = Union[Extension, NormalizationFailure]
