"""Pruning of old, dangling and empty parts of a simplestream image tree."""

from __future__ import annotations

import logging
import os
import shutil
import time
from contextlib import suppress
from datetime import timedelta

from simplestream_maintainer.stream import get_products, read_catalog, write_json_file

logger = logging.getLogger(__name__)

_DANGLING_MAX_AGE = timedelta(hours=6)


def _catalog_path(root_dir: str, stream_version: str, stream_name: str) -> str:
    return os.path.join(root_dir, "streams", stream_version, f"{stream_name}.json")


def _age_seconds(path: str) -> float:
    return time.time() - os.stat(path).st_mtime


def prune_stream_product_versions(
    root_dir: str,
    stream_version: str,
    stream_name: str,
    retain_builds: int = 10,
    retain_days: int = 0,
) -> None:
    """Drop all but the newest ``retain_builds`` versions of every catalog product.

    Versions older than ``retain_days`` days are dropped too when it is positive.
    The catalog is rewritten first; the version directories are removed after.
    """
    if retain_builds < 1:
        raise ValueError("At least 1 product version build must be retained")

    catalog_path = _catalog_path(root_dir, stream_version, stream_name)
    catalog = read_catalog(catalog_path)
    max_age = timedelta(days=retain_days).total_seconds()
    discarded: list[str] = []

    for product_id, product in list(catalog.products.items()):
        product_path = os.path.join(root_dir, stream_name, product.rel_path())

        for position, name in enumerate(sorted(product.versions, reverse=True)):
            version_path = os.path.join(product_path, name)
            too_many = position >= retain_builds
            if too_many or (retain_days > 0 and _age_seconds(version_path) > max_age):
                del product.versions[name]
                discarded.append(version_path)

        if not product.versions:
            del catalog.products[product_id]

    catalog_temp = os.path.join(root_dir, "streams", stream_version, f".{stream_name}.json.tmp")
    try:
        write_json_file(catalog_temp, catalog)
        os.replace(catalog_temp, catalog_path)
    finally:
        with suppress(FileNotFoundError):
            os.remove(catalog_temp)

    os.chmod(catalog_path, 0o644)

    for path in discarded:
        try:
            shutil.rmtree(path)
        except OSError as exc:
            logger.error("Failed to prune old product version path=%r error=%r", path, exc)
            continue
        logger.info("Pruned old product version path=%r", path)


def _remove_if_older(path: str, max_age: timedelta) -> None:
    if _age_seconds(path) <= max_age.total_seconds():
        return
    try:
        shutil.rmtree(path)
    except OSError as exc:
        logger.error("Failed to prune dangling resource path=%r error=%r", path, exc)
        return
    logger.info("Pruned dangling resource path=%r", path)


def prune_dangling_product_versions(root_dir: str, stream_version: str, stream_name: str) -> None:
    """Remove products and versions on disk that the catalog does not reference.

    Only resources older than six hours are removed, and nothing at all when
    the catalog holds no products.
    """
    products = get_products(root_dir, stream_name, include_incomplete=True)
    catalog = read_catalog(_catalog_path(root_dir, stream_version, stream_name))

    if not catalog.products:
        logger.info("Skipping removal of dangling resources, because product catalog is empty")
        return

    for product_id, product in products.items():
        product_path = os.path.join(root_dir, stream_name, product.rel_path())
        known = catalog.products.get(product_id)

        if known is None:
            _remove_if_older(product_path, _DANGLING_MAX_AGE)
            continue

        for version_name in product.versions:
            if version_name not in known.versions:
                _remove_if_older(os.path.join(product_path, version_name), _DANGLING_MAX_AGE)


def _list_entries(path: str) -> list[os.DirEntry]:
    with os.scandir(path) as entries:
        return sorted(entries, key=lambda e: e.name)


def prune_empty_dirs(base_dir: str, keep_base_dir: bool = True) -> None:
    """Recursively remove empty directories below base_dir.

    The base directory itself is removed when empty unless keep_base_dir is set.
    """
    base_dir = os.path.normpath(base_dir)
    entries = _list_entries(base_dir)

    if entries:
        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                prune_empty_dirs(entry.path, False)
        entries = _list_entries(base_dir)

    if not keep_base_dir and not entries:
        os.rmdir(base_dir)
        logger.info("Removed empty directory path=%r", base_dir)