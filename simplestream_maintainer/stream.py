"""Products, versions and items of a simplestream image tree."""

from __future__ import annotations

import errno
import hashlib
import json
import os
import posixpath
import stat
from dataclasses import dataclass, field
from typing import Any, Iterator

import yaml

FILE_CHECKSUM_SHA256 = "SHA256SUMS"
FILE_IMAGE_CONFIG = "image.yaml"

ITEM_TYPE_METADATA = "lxd.tar.xz"
ITEM_TYPE_SQUASHFS = "squashfs"
ITEM_TYPE_SQUASHFS_DELTA = "squashfs.vcdiff"
ITEM_TYPE_DISK_KVM = "disk-kvm.img"
ITEM_TYPE_DISK_KVM_DELTA = "disk-kvm.img.vcdiff"
ITEM_TYPE_ROOT_TAR_XZ = "root.tar.xz"

ITEM_EXT_METADATA = ".tar.xz"
ITEM_EXT_SQUASHFS = ".squashfs"
ITEM_EXT_SQUASHFS_DELTA = ".vcdiff"
ITEM_EXT_DISK_KVM = ".qcow2"
ITEM_EXT_DISK_KVM_DELTA = ".qcow2.vcdiff"

ALLOWED_ITEM_EXTENSIONS = (
    ITEM_EXT_METADATA,
    ITEM_EXT_SQUASHFS,
    ITEM_EXT_SQUASHFS_DELTA,
    ITEM_EXT_DISK_KVM,
    ITEM_EXT_DISK_KVM_DELTA,
)

_PRODUCT_PATH_FORMAT = "stream/distribution/release/architecture/variant"
_PRODUCT_PATH_LENGTH = len(_PRODUCT_PATH_FORMAT.split("/"))
_COMBINED_HASH_TYPES = (ITEM_TYPE_SQUASHFS, ITEM_TYPE_DISK_KVM, ITEM_TYPE_ROOT_TAR_XZ)


class StreamError(Exception):
    """Base error for stream operations."""


class VersionIncompleteError(StreamError):
    """The product version lacks metadata or a root filesystem, or is hidden."""


class InvalidImageConfigError(StreamError):
    """The product version has an invalid image config."""


class ProductInvalidPathError(StreamError):
    """The product path does not exist, is not a directory or has a wrong format."""


class _ProductPathMissingError(ProductInvalidPathError, FileNotFoundError):
    """The product path does not exist."""


def _join(*parts: str) -> str:
    present = [p for p in parts if p]
    if not present:
        return ""
    return os.path.normpath(os.path.join(*present))


def _url_join(*parts: str) -> str:
    joined = "/".join(p for p in parts if p)
    return posixpath.normpath(joined) if joined else ""


def _ext(name: str) -> str:
    idx = name.rfind(".")
    return name[idx:] if idx != -1 else ""


def _sorted_entries(path: str) -> list[os.DirEntry]:
    with os.scandir(path) as entries:
        return sorted(entries, key=lambda e: e.name)


def _sorted_dict(mapping: dict[str, Any], convert=lambda v: v) -> dict[str, Any]:
    return {key: convert(mapping[key]) for key in sorted(mapping)}


@dataclass
class Item:
    """A file within a product version."""

    ftype: str = ""
    path: str = ""
    size: int = 0
    sha256: str = ""
    combined_sha256_disk_kvm_img: str = ""
    combined_sha256_squashfs: str = ""
    combined_sha256_rootxz: str = ""
    delta_base: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"ftype": self.ftype, "path": self.path, "size": self.size}
        optional = (
            ("sha256", self.sha256),
            ("combined_disk-kvm-img_sha256", self.combined_sha256_disk_kvm_img),
            ("combined_squashfs_sha256", self.combined_sha256_squashfs),
            ("combined_rootxz_sha256", self.combined_sha256_rootxz),
            ("delta_base", self.delta_base),
        )
        data.update((key, value) for key, value in optional if value)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Item:
        return cls(
            ftype=data.get("ftype", ""),
            path=data.get("path", ""),
            size=data.get("size", 0),
            sha256=data.get("sha256", ""),
            combined_sha256_disk_kvm_img=data.get("combined_disk-kvm-img_sha256", ""),
            combined_sha256_squashfs=data.get("combined_squashfs_sha256", ""),
            combined_sha256_rootxz=data.get("combined_rootxz_sha256", ""),
            delta_base=data.get("delta_base", ""),
        )


@dataclass
class _Requirement:
    requirements: dict[str, str] = field(default_factory=dict)
    releases: list[str] = field(default_factory=list)
    architectures: list[str] = field(default_factory=list)
    variants: list[str] = field(default_factory=list)

    def applies(self, release: str, architecture: str, variant: str) -> bool:
        checks = ((self.releases, release), (self.architectures, architecture), (self.variants, variant))
        return all(not allowed or value in allowed for allowed, value in checks)


@dataclass
class _ImageConfig:
    distro_name: str = ""
    release_aliases: dict[str, str] = field(default_factory=dict)
    requirements: list[_Requirement] = field(default_factory=list)


def _as_mapping(value: Any, what: str) -> dict:
    if value is None or value == "":
        return {}
    if not isinstance(value, dict):
        raise InvalidImageConfigError(f"Product version has invalid image config: {what} must be a mapping")
    return value


def _as_list(value: Any, what: str) -> list:
    if value is None or value == "":
        return []
    if not isinstance(value, list):
        raise InvalidImageConfigError(f"Product version has invalid image config: {what} must be a list")
    return value


def _as_str(value: Any, what: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise InvalidImageConfigError(f"Product version has invalid image config: {what} must be a string")
    return value


def _as_str_map(value: Any, what: str) -> dict[str, str]:
    return {str(k): _as_str(v, what) for k, v in _as_mapping(value, what).items()}


def _as_str_list(value: Any, what: str) -> list[str]:
    return [_as_str(v, what) for v in _as_list(value, what)]


def _load_image_config(path: str) -> _ImageConfig:
    try:
        with open(path, encoding="utf-8") as handle:
            document = yaml.load(handle, Loader=yaml.BaseLoader)
    except (OSError, yaml.YAMLError) as exc:
        raise InvalidImageConfigError(f"Product version has invalid image config: {exc}") from exc

    section = _as_mapping(_as_mapping(document, "image config").get("simplestream"), "simplestream")
    requirements = []
    for entry in _as_list(section.get("requirements"), "requirements"):
        entry = _as_mapping(entry, "requirement")
        requirements.append(
            _Requirement(
                requirements=_as_str_map(entry.get("requirements"), "requirements"),
                releases=_as_str_list(entry.get("releases"), "releases"),
                architectures=_as_str_list(entry.get("architectures"), "architectures"),
                variants=_as_str_list(entry.get("variants"), "variants"),
            )
        )
    return _ImageConfig(
        distro_name=_as_str(section.get("distro_name"), "distro_name"),
        release_aliases=_as_str_map(section.get("release_aliases"), "release_aliases"),
        requirements=requirements,
    )


@dataclass
class Version:
    """Items available for a single image version."""

    items: dict[str, Item] = field(default_factory=dict)
    checksums: dict[str, str] | None = field(default=None, compare=False)
    image_config: _ImageConfig = field(default_factory=_ImageConfig, compare=False)
    incomplete: bool = field(default=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        if not self.items:
            return {}
        return {"items": _sorted_dict(self.items, Item.to_dict)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Version:
        items = data.get("items") or {}
        return cls(items={name: Item.from_dict(item) for name, item in items.items()})


@dataclass
class Product:
    """A single image with all its available versions."""

    aliases: str = ""
    architecture: str = ""
    distro: str = ""
    os: str = ""
    release: str = ""
    release_title: str = ""
    variant: str = ""
    versions: dict[str, Version] = field(default_factory=dict)
    requirements: dict[str, str] = field(default_factory=dict)

    def id(self) -> str:
        return f"{self.distro}:{self.release}:{self.architecture}:{self.variant}"

    def rel_path(self) -> str:
        return _join(self.distro, self.release, self.architecture, self.variant)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "aliases": self.aliases,
            "arch": self.architecture,
            "distro": self.distro,
            "os": self.os,
            "release": self.release,
            "release_title": self.release_title,
            "variant": self.variant,
        }
        if self.versions:
            data["versions"] = _sorted_dict(self.versions, Version.to_dict)
        data["requirements"] = _sorted_dict(self.requirements)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Product:
        versions = data.get("versions") or {}
        return cls(
            aliases=data.get("aliases", ""),
            architecture=data.get("arch", ""),
            distro=data.get("distro", ""),
            os=data.get("os", ""),
            release=data.get("release", ""),
            release_title=data.get("release_title", ""),
            variant=data.get("variant", ""),
            versions={name: Version.from_dict(v or {}) for name, v in versions.items()},
            requirements=dict(data.get("requirements") or {}),
        )


@dataclass
class ProductCatalog:
    """All products of a stream."""

    content_id: str = ""
    format: str = ""
    datatype: str = ""
    products: dict[str, Product] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "content_id": self.content_id,
            "format": self.format,
            "datatype": self.datatype,
            "products": _sorted_dict(self.products, Product.to_dict),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProductCatalog:
        products = data.get("products") or {}
        return cls(
            content_id=data.get("content_id", ""),
            format=data.get("format", ""),
            datatype=data.get("datatype", ""),
            products={pid: Product.from_dict(p or {}) for pid, p in products.items()},
        )


def new_catalog(stream_name: str, products: dict[str, Product] | None = None) -> ProductCatalog:
    """Create a product catalog for the given stream."""
    return ProductCatalog(
        content_id=stream_name,
        datatype="image-downloads",
        format="products:1.0",
        products=products if products is not None else {},
    )


def _walk_dirs(top: str) -> Iterator[str]:
    yield top
    for entry in _sorted_entries(top):
        if entry.is_dir(follow_symlinks=False):
            yield from _walk_dirs(entry.path)


def get_products(
    root_dir: str,
    stream_rel_path: str,
    include_incomplete: bool = False,
    calc_hashes: bool = False,
) -> dict[str, Product]:
    """Find all non-empty products below the stream directory, keyed by product ID."""
    stream_path = _join(root_dir, stream_rel_path)
    info = os.lstat(stream_path)
    products: dict[str, Product] = {}
    if not stat.S_ISDIR(info.st_mode):
        return products

    for path in _walk_dirs(stream_path):
        rel_path = os.path.relpath(path, root_dir)
        try:
            product = get_product(root_dir, rel_path, include_incomplete, calc_hashes)
        except ProductInvalidPathError:
            continue
        if product.versions:
            products[product.id()] = product
    return products


def get_product(
    root_dir: str,
    product_rel_path: str,
    include_incomplete: bool = False,
    calc_hashes: bool = False,
) -> Product:
    """Read the product on the given path, including all of its versions."""
    product_path = _join(root_dir, product_rel_path)
    parts = product_rel_path.split(os.sep)
    if len(parts) != _PRODUCT_PATH_LENGTH:
        raise ProductInvalidPathError(
            f"Invalid product path: path {product_rel_path!r} does not match "
            f"the required format {_PRODUCT_PATH_FORMAT!r}"
        )

    try:
        info = os.stat(product_path)
    except FileNotFoundError as exc:
        raise _ProductPathMissingError(
            errno.ENOENT, f"Invalid product path: {exc.strerror}", product_path
        ) from exc
    except OSError as exc:
        raise ProductInvalidPathError(f"Invalid product path: {exc}") from exc

    if not stat.S_ISDIR(info.st_mode):
        raise ProductInvalidPathError("Invalid product path: not a directory")

    distro, release, architecture, variant = parts[-4:]
    product = Product(
        variant=variant,
        architecture=architecture,
        release=release,
        release_title=release,
        distro=distro,
    )

    aliases: list[str] = []
    os_name = ""

    for entry in _sorted_entries(product_path):
        if not entry.is_dir(follow_symlinks=False):
            continue

        version_rel_path = _join(product_rel_path, entry.name)
        try:
            version = get_version(root_dir, version_rel_path, include_incomplete, calc_hashes)
        except VersionIncompleteError:
            continue

        if not version.incomplete:
            config = version.image_config
            aliases = []
            product.requirements = {}
            os_name = config.distro_name

            for requirement in config.requirements:
                if requirement.applies(product.release, product.architecture, product.variant):
                    product.requirements.update(requirement.requirements)

            for alias_release, release_aliases in config.release_aliases.items():
                if alias_release != product.release:
                    continue
                for release_alias in release_aliases.split(","):
                    aliases.extend(create_aliases(product.distro, release_alias, product.variant))

        product.versions[entry.name] = version

    product.aliases = ",".join(create_aliases(product.distro, product.release, product.variant) + aliases)
    product.os = os_name or product.distro.title()
    return product


def get_version(
    root_dir: str,
    version_rel_path: str,
    include_incomplete: bool = False,
    calc_hashes: bool = False,
) -> Version:
    """Read the items, checksums and image config of a single version."""
    version_path = _join(root_dir, version_rel_path)

    if os.path.basename(version_path).startswith(".") and not include_incomplete:
        raise VersionIncompleteError(f"Product version is incomplete (hidden version): {version_rel_path!r}")

    version = Version(incomplete=True)

    for entry in _sorted_entries(version_path):
        if entry.is_dir(follow_symlinks=False):
            continue

        name = entry.name
        if name.endswith(ALLOWED_ITEM_EXTENSIONS):
            version.items[name] = get_item(root_dir, _join(version_rel_path, name), calc_hashes)
        elif name == FILE_CHECKSUM_SHA256:
            try:
                version.checksums = read_checksum_file(os.path.join(version_path, name))
            except OSError as exc:
                raise StreamError(f"Failed to read checksums file: {exc}") from exc
        elif name == FILE_IMAGE_CONFIG:
            version.image_config = _load_image_config(os.path.join(version_path, name))

    meta_item = version.items.get(ITEM_TYPE_METADATA)
    if meta_item is not None:
        meta_path = os.path.join(version_path, ITEM_TYPE_METADATA)
        for item_name, item in version.items.items():
            if item.ftype not in _COMBINED_HASH_TYPES:
                continue

            item_hash = file_hash(meta_path, os.path.join(version_path, item_name)) if calc_hashes else ""

            if item.ftype == ITEM_TYPE_DISK_KVM:
                meta_item.combined_sha256_disk_kvm_img = item_hash
                version.incomplete = False
            elif item.ftype == ITEM_TYPE_SQUASHFS:
                meta_item.combined_sha256_squashfs = item_hash
                version.incomplete = False
            else:
                meta_item.combined_sha256_rootxz = item_hash

    if version.incomplete and not include_incomplete:
        raise VersionIncompleteError(f"Product version is incomplete: {version_rel_path!r}")

    return version


def get_item(root_dir: str, item_rel_path: str, calc_hashes: bool = False) -> Item:
    """Describe the file on the given path, optionally with its SHA256 hash."""
    item_path = _join(root_dir, item_rel_path)
    info = os.stat(item_path)
    name = os.path.basename(item_path)

    item = Item(size=info.st_size, path=item_rel_path)
    if calc_hashes:
        item.sha256 = file_hash(item_path)

    ext = _ext(name)
    if ext == ITEM_EXT_SQUASHFS:
        item.ftype = ITEM_TYPE_SQUASHFS
    elif ext == ITEM_EXT_DISK_KVM:
        item.ftype = ITEM_TYPE_DISK_KVM
    elif ext == ".vcdiff":
        parts = name.split(".")
        if name.endswith(ITEM_EXT_DISK_KVM_DELTA):
            item.ftype = ITEM_TYPE_DISK_KVM_DELTA
            item.delta_base = parts[-3]
        else:
            item.ftype = ITEM_TYPE_SQUASHFS_DELTA
            item.delta_base = parts[-2]
    else:
        item.ftype = name

    return item


def read_checksum_file(path: str) -> dict[str, str]:
    """Read a checksum file into a mapping of file name to checksum."""
    checksums: dict[str, str] = {}
    with open(path, encoding="utf-8", errors="replace") as handle:
        for line in handle:
            parts = line.strip().split(" ", 1)
            if len(parts) != 2:
                continue
            checksums[parts[1].strip()] = parts[0]
    return checksums


def create_aliases(distro: str, release: str, variant: str) -> list[str]:
    """Create the image aliases for the given distro, release and variant."""
    aliases = [_url_join(distro, release, variant)]

    if release == "current":
        aliases.append(_url_join(distro, variant))

    if variant == "default":
        if release == "current":
            aliases.append(distro)
        else:
            aliases.append(_url_join(distro, release))

    return aliases


def file_hash(*args: str) -> str:
    """Return the SHA256 hex digest of the concatenated contents of the given files."""
    digest = hashlib.sha256()
    for path in args:
        with open(path, "rb") as handle:
            for chunk in iter(lambda: handle.read(1 << 20), b""):
                digest.update(chunk)
    return digest.hexdigest()


def read_catalog(path: str) -> ProductCatalog:
    """Read a product catalog from a JSON file."""
    with open(path, encoding="utf-8") as handle:
        return ProductCatalog.from_dict(json.load(handle) or {})


_JSON_ESCAPES = {"<": "\\u003c", ">": "\\u003e", "&": "\\u0026", "\u2028": "\\u2028", "\u2029": "\\u2029"}


def write_json_file(path: str, data: Any) -> None:
    """Write an object (or anything with ``to_dict``) as compact JSON."""
    if hasattr(data, "to_dict"):
        data = data.to_dict()
    text = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
    text = "".join(_JSON_ESCAPES.get(ch, ch) for ch in text)
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(text + "\n")