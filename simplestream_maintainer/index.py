"""Stream index that lists the product catalogs of a simplestream server."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from simplestream_maintainer.stream import ProductCatalog

INDEX_FORMAT = "index:1.0"
PRODUCTS_FORMAT = "products:1.0"


def _rfc3339_now() -> str:
    text = datetime.now().astimezone().isoformat(timespec="seconds")
    if text.endswith("+00:00"):
        text = text[: -len("+00:00")] + "Z"
    return text


@dataclass
class StreamIndexEntry:
    """Index entry describing a single product catalog."""

    datatype: str = ""
    path: str = ""
    format: str = ""
    updated: str = ""
    products: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "datatype": self.datatype,
            "path": self.path,
            "format": self.format,
            "updated": self.updated,
            "products": list(self.products),
        }


@dataclass
class StreamIndex:
    """Index of all product catalogs of a stream version."""

    format: str = INDEX_FORMAT
    index: dict[str, StreamIndexEntry] = field(default_factory=dict)

    def add_entry(self, stream_name: str, catalog_path: str, catalog: ProductCatalog) -> None:
        """Add a catalog and the sorted list of its product IDs to the index."""
        self.index[stream_name] = StreamIndexEntry(
            format=PRODUCTS_FORMAT,
            path=catalog_path,
            datatype=catalog.datatype,
            updated=_rfc3339_now(),
            products=sorted(catalog.products),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "format": self.format,
            "index": {name: self.index[name].to_dict() for name in sorted(self.index)},
        }