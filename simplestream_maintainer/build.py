"""Building product catalogs and the stream index from an image directory tree."""

from __future__ import annotations

import gzip
import logging
import os
import shutil
import subprocess
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import suppress
from dataclasses import dataclass, field, replace
from itertools import pairwise
from typing import Iterable

from simplestream_maintainer.index import StreamIndex
from simplestream_maintainer.stream import (
    FILE_CHECKSUM_SHA256,
    ITEM_TYPE_DISK_KVM,
    ITEM_TYPE_DISK_KVM_DELTA,
    ITEM_TYPE_SQUASHFS,
    ITEM_TYPE_SQUASHFS_DELTA,
    Product,
    ProductCatalog,
    StreamError,
    get_item,
    get_products,
    get_version,
    new_catalog,
    read_catalog,
    write_json_file,
)

logger = logging.getLogger(__name__)

_DELTA_TYPES = (ITEM_TYPE_DISK_KVM_DELTA, ITEM_TYPE_SQUASHFS_DELTA)
_DELTA_SOURCE_TYPES = (ITEM_TYPE_DISK_KVM, ITEM_TYPE_SQUASHFS)


def _log(level: int, message: str, **fields: object) -> None:
    details = " ".join(f"{key}={value!r}" for key, value in fields.items())
    logger.log(level, "%s %s", message, details)


def gzip_file(source: str, target: str) -> None:
    """Write a gzip-compressed copy of source to target."""
    with open(source, "rb") as src, gzip.open(target, "wb") as dst:
        shutil.copyfileobj(src, dst)


def build_index(
    root_dir: str,
    stream_version: str = "v1",
    stream_names: Iterable[str] = ("images",),
    workers: int = 1,
) -> None:
    """Build the product catalogs of the given streams and the stream index.

    All files are first written next to their destinations as hidden
    temporary files and moved in place only once everything was written,
    the index last.
    """
    index = StreamIndex()
    meta_dir = os.path.join(root_dir, "streams", stream_version)
    os.makedirs(meta_dir, exist_ok=True)

    temporaries: list[str] = []
    replaces: list[tuple[str, str]] = []

    def stage(write, temp_path: str, final_path: str) -> None:
        temporaries.append(temp_path)
        write(temp_path)
        replaces.append((temp_path, final_path))

    try:
        for stream_name in stream_names:
            catalog = build_product_catalog(root_dir, stream_version, stream_name, workers)

            catalog_path = os.path.join(meta_dir, f"{stream_name}.json")
            catalog_temp = os.path.join(meta_dir, f".{stream_name}.json.tmp")
            stage(lambda p, c=catalog: write_json_file(p, c), catalog_temp, catalog_path)
            stage(lambda p, s=catalog_temp: gzip_file(s, p), f"{catalog_temp}.gz", f"{catalog_path}.gz")

            index.add_entry(stream_name, os.path.relpath(catalog_path, root_dir), catalog)

        index_path = os.path.join(meta_dir, "index.json")
        index_temp = os.path.join(meta_dir, ".index.json.tmp")
        stage(lambda p: write_json_file(p, index), index_temp, index_path)
        stage(lambda p: gzip_file(index_temp, p), f"{index_temp}.gz", f"{index_path}.gz")

        for old_path, new_path in replaces:
            os.replace(old_path, new_path)
            os.chmod(new_path, 0o644)
    finally:
        for temp_path in temporaries:
            with suppress(FileNotFoundError):
                os.remove(temp_path)


@dataclass
class _CatalogBuilder:
    root_dir: str
    stream_name: str
    catalog: ProductCatalog
    lock: threading.Lock = field(default_factory=threading.Lock)

    def add_version(self, product_id: str, product_path: str, version_name: str, existed: bool) -> None:
        fields = {"streamName": self.stream_name, "product": product_id, "version": version_name}
        try:
            version = get_version(self.root_dir, os.path.join(product_path, version_name), calc_hashes=True)
        except (StreamError, OSError) as exc:
            _log(logging.ERROR, "Failed to get version", **fields, error=exc)
            return

        if version.checksums is not None:
            for item_name, item in version.items.items():
                # Delta files are generated after the checksums file was written.
                if not existed and item.ftype in _DELTA_TYPES:
                    continue
                if version.checksums.get(item_name, "") != item.sha256:
                    _log(logging.ERROR, "Checksum mismatch", **fields, item=item_name)
                    return

        with self.lock:
            self.catalog.products[product_id].versions[version_name] = version

        _log(logging.INFO, "New version added to the product catalog", **fields)

    def update_delta(
        self,
        product_id: str,
        product_rel_path: str,
        source_name: str,
        target_name: str,
        item_name: str,
        ftype: str,
    ) -> None:
        dot = item_name.rfind(".")
        prefix = item_name[:dot] if dot != -1 else item_name
        suffix = "qcow2.vcdiff" if ftype == ITEM_TYPE_DISK_KVM else "vcdiff"
        delta_name = f"{prefix}.{source_name}.{suffix}"

        version = self.catalog.products[product_id].versions[target_name]
        with self.lock:
            delta_item = version.items.get(delta_name)

        version_dir = os.path.join(self.root_dir, product_rel_path, target_name)
        fields = {"product": product_id, "version": target_name, "item": delta_name, "deltaBase": source_name}

        if delta_item is None:
            source_path = os.path.join(self.root_dir, product_rel_path, source_name, item_name)
            target_path = os.path.join(version_dir, item_name)
            output_path = os.path.join(version_dir, delta_name)

            try:
                os.stat(source_path)
            except FileNotFoundError:
                return
            except OSError as exc:
                _log(logging.ERROR, "Failed to read base delta file", **fields, error=exc)
                return

            try:
                subprocess.run(
                    ["xdelta3", "-e", "-9", "-s", source_path, target_path, output_path],
                    check=True,
                )
            except (subprocess.SubprocessError, OSError) as exc:
                _log(logging.ERROR, "Failed creating delta file", **fields, error=exc)
                with suppress(OSError):
                    os.remove(output_path)
                return

            _log(logging.INFO, "Delta generated successfully", **fields)

        if delta_item is not None and delta_item.sha256:
            return

        delta_rel_path = os.path.join(product_rel_path, target_name, delta_name)
        try:
            delta_item = get_item(self.root_dir, delta_rel_path, calc_hashes=True)
        except OSError as exc:
            _log(logging.ERROR, "Failed to get existing delta item", **fields, error=exc)
            return

        checksums = version.checksums
        if checksums and delta_name not in checksums:
            checksum_file = os.path.join(version_dir, FILE_CHECKSUM_SHA256)
            try:
                with open(checksum_file, "a", encoding="utf-8") as handle:
                    handle.write(f"{delta_item.sha256}  {delta_name}\n")
            except OSError as exc:
                _log(logging.ERROR, "Failed to update checksums file", **fields, error=exc)
                return

            with self.lock:
                checksums[delta_name] = delta_item.sha256

        with self.lock:
            version.items[delta_name] = delta_item


def _wait(futures: list[Future]) -> None:
    for future in futures:
        future.result()


def build_product_catalog(
    root_dir: str,
    stream_version: str,
    stream_name: str,
    workers: int = 1,
) -> ProductCatalog:
    """Update the stream's product catalog with the versions found on disk.

    New versions are hashed and verified against their checksums file; only
    valid ones enter the catalog. Missing delta files between consecutive
    versions are then generated and recorded. At most ``workers`` tasks run
    at once.
    """
    catalog_path = os.path.join(root_dir, "streams", stream_version, f"{stream_name}.json")
    try:
        catalog = read_catalog(catalog_path)
    except FileNotFoundError:
        catalog = new_catalog(stream_name)

    products = get_products(root_dir, stream_name)
    builder = _CatalogBuilder(root_dir=root_dir, stream_name=stream_name, catalog=catalog)

    with ThreadPoolExecutor(max_workers=max(workers, 1)) as pool:
        futures: list[Future] = []
        _, new_products = diff_products(catalog.products, products)

        for product_id, product in new_products.items():
            product_path = os.path.join(stream_name, product.rel_path())

            with builder.lock:
                existing = catalog.products.get(product_id)
                existed = existing is not None
                versions = existing.versions if existing is not None and existing.versions else {}
                catalog.products[product_id] = replace(product, versions=versions)

            for version_name in product.versions:
                futures.append(pool.submit(builder.add_version, product_id, product_path, version_name, existed))

        _wait(futures)

        futures = []
        for product_id, product in list(catalog.products.items()):
            product_rel_path = os.path.join(stream_name, product.rel_path())

            for source_name, target_name in pairwise(sorted(product.versions)):
                target = product.versions[target_name]
                for item_name, item in list(target.items.items()):
                    if item.ftype not in _DELTA_SOURCE_TYPES:
                        continue
                    futures.append(
                        pool.submit(
                            builder.update_delta,
                            product_id,
                            product_rel_path,
                            source_name,
                            target_name,
                            item_name,
                            item.ftype,
                        )
                    )

        _wait(futures)

    return catalog


def diff_products(
    old_products: dict[str, Product],
    new_products: dict[str, Product],
) -> tuple[dict[str, Product], dict[str, Product]]:
    """Return the products (and versions) only in old, and those only in new."""

    def find_missing(reference: dict[str, Product], candidates: dict[str, Product]) -> dict[str, Product]:
        missing: dict[str, Product] = {}
        for product_id, product in candidates.items():
            known = reference.get(product_id)
            if known is None:
                missing[product_id] = product
                continue

            versions = {name: v for name, v in product.versions.items() if name not in known.versions}
            if versions:
                missing[product_id] = replace(product, versions=versions)
        return missing

    return find_missing(new_products, old_products), find_missing(old_products, new_products)