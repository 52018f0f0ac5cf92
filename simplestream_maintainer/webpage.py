"""Data model of the HTML page that lists the images hosted by a stream."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from simplestream_maintainer.stream import ITEM_TYPE_METADATA, Product, ProductCatalog

_NOT_AVAILABLE = "N/A"
_STALE_AFTER = timedelta(days=8)
_FINGERPRINT_LENGTH = 12
_VERSION_TIMESTAMP = re.compile(r"\d{8}_\d{4}")
_SIZE_UNITS = ("kB", "MB", "GB", "TB", "PB", "EB")
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

_PARAGRAPHS = (
    "Images hosted on this server are available in LXD through the predefined remote "
    "<code>images:</code>. For detailed instructions about LXD image management, please "
    "refer to the How to Manage Images guide in the official documentation.",
    "Images are built daily and we retain the last 2 successful builds of each image for up "
    "to 15 days. Thus, if a particular build fails on any given day, the previous successful "
    "builds will remain accessible.",
    "If you encounter any issues with the images hosted on our server or have suggestions for "
    "improvement, please let us know by opening an issue in the LXD repository.",
)


@dataclass
class WebPageImageFile:
    """A file belonging to an image version."""

    name: str = ""
    path: str = ""
    date: str = ""
    size: str = ""
    size_bytes: int = 0


@dataclass
class WebPageImageVersion:
    """A single version of an image with its files."""

    name: str = ""
    path: str = ""
    build_date: str = _NOT_AVAILABLE
    is_stale: bool = False
    fingerprint_container: str = ""
    fingerprint_vm: str = ""
    files: list[WebPageImageFile] = field(default_factory=list)


@dataclass
class WebPageImage:
    """A table entry of the page: one product with its versions."""

    distribution: str = ""
    release: str = ""
    architecture: str = ""
    variant: str = ""
    is_stale: bool = False
    aliases: list[str] = field(default_factory=list)
    requirements: dict[str, str] = field(default_factory=dict)
    versions: list[WebPageImageVersion] = field(default_factory=list)


@dataclass
class WebPage:
    """Everything needed to render the stream's index page."""

    favicon_url: str = ""
    logo_url: str = ""
    title: str = "LXD Images"
    paragraphs: list[str] = field(default_factory=lambda: list(_PARAGRAPHS))
    footer_copyright: str = ""
    footer_updated_at: str = ""
    images: list[WebPageImage] = field(default_factory=list)


def _updated_at(now: datetime) -> str:
    now = now.astimezone(timezone.utc)
    stamp = f"{now.day:02d} {_MONTHS[now.month - 1]} {now.year:04d} ({now.hour:02d}:{now.minute:02d})"
    return f"Last updated: {stamp} UTC"


def new_web_page(root_dir: str, catalog: ProductCatalog) -> WebPage:
    """Build the page data from a product catalog.

    Files found in the version directories below root_dir that the catalog
    does not reference are listed as well.
    """
    page = WebPage(footer_updated_at=_updated_at(datetime.now(timezone.utc)))

    for product_id in sorted(catalog.products):
        product = catalog.products[product_id]
        if not product.versions:
            continue

        image = WebPageImage(
            aliases=product.aliases.split(","),
            distribution=product.os,
            release=product.release,
            architecture=product.architecture,
            variant=product.variant,
            requirements=product.requirements,
        )

        version_dir = os.path.join(catalog.content_id, product.rel_path())
        for version_id in sorted(product.versions, reverse=True):
            image.versions.append(_parse_version(product, root_dir, version_dir, version_id))

        page.images.append(image)

    return page


def _parse_version_timestamp(name: str) -> datetime | None:
    if not _VERSION_TIMESTAMP.fullmatch(name):
        return None
    try:
        return datetime.strptime(name, "%Y%m%d_%H%M").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _parse_version(product: Product, root_dir: str, version_dir: str, version_id: str) -> WebPageImageVersion:
    version = WebPageImageVersion(
        name=version_id,
        path=os.path.normpath(os.path.join("/", version_dir, version_id)),
    )

    timestamp = _parse_version_timestamp(version_id)
    if timestamp is not None:
        version.build_date = format_time(timestamp)

    if timestamp is None or timestamp < datetime.now(timezone.utc) - _STALE_AFTER:
        version.is_stale = True

    for item in product.versions[version_id].items.values():
        if item.ftype == ITEM_TYPE_METADATA:
            if len(item.combined_sha256_squashfs) > _FINGERPRINT_LENGTH:
                version.fingerprint_container = item.combined_sha256_squashfs[:_FINGERPRINT_LENGTH]
            if len(item.combined_sha256_disk_kvm_img) > _FINGERPRINT_LENGTH:
                version.fingerprint_vm = item.combined_sha256_disk_kvm_img[:_FINGERPRINT_LENGTH]

        version.files.append(
            WebPageImageFile(
                name=os.path.basename(item.path),
                path=item.path,
                date=version.build_date,
                size=format_size(item.size, 2),
                size_bytes=item.size,
            )
        )

    abs_path = os.path.abspath(os.path.join(root_dir, version.path.lstrip("/")))
    try:
        with os.scandir(abs_path) as scanned:
            entries = sorted(scanned, key=lambda e: e.name)
    except FileNotFoundError:
        entries = []

    known = {f.name for f in version.files}
    for entry in entries:
        if entry.is_dir(follow_symlinks=False) or entry.name in known:
            continue

        info = entry.stat(follow_symlinks=False)
        version.files.append(
            WebPageImageFile(
                name=entry.name,
                path=os.path.join(version.path, entry.name),
                date=format_time(datetime.fromtimestamp(info.st_mtime, timezone.utc)),
                size=format_size(info.st_size, 2),
            )
        )
        known.add(entry.name)

    version.files.sort(key=lambda f: f.name)
    return version


def _byte_size_string(size_bytes: int, precision: int) -> str:
    if size_bytes < 1000:
        return f"{size_bytes}B"

    value = float(size_bytes)
    for unit in _SIZE_UNITS:
        value /= 1000
        if value < 1000:
            return f"{value:.{precision}f}{unit}"
    return f"{value:.{precision}f}EB"


def format_size(size_bytes: int, precision: int) -> str:
    """Return a human-readable size with a space between the number and its unit."""
    text = _byte_size_string(size_bytes, precision)
    for idx in range(len(text) - 1, -1, -1):
        if text[idx].isdigit():
            return f"{text[: idx + 1]} {text[idx + 1:]}"
    return text


def format_time(value: datetime) -> str:
    """Format a time in UTC as "YYYY-MM-DD (hh:mm)"."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d (%H:%M)")