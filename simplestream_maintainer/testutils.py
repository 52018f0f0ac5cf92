"""Builders that lay out mocked product trees on disk for tests."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, replace
from datetime import timedelta

from simplestream_maintainer.stream import (
    FILE_CHECKSUM_SHA256,
    FILE_IMAGE_CONFIG,
    get_products,
    new_catalog,
    write_json_file,
)

ITEM_DEFAULT_CONTENT = "test-content"
ITEM_DEFAULT_CONTENT_SHA = "0a3666a0710c08aa6d0de92ce72beeb5b93124cce1bf3701c9d6cdeb543cb73e"


def _check_root_dir(current: str, new: str) -> None:
    if not new:
        raise ValueError("Attempt to set an empty root dir for a mock!")
    if current and current != new:
        raise ValueError(f"Attempt to change a root dir for a mock: {current!r}")


def _write_file(path: str, content: str) -> None:
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(content)


@dataclass
class ItemMock:
    """A mocked file within a product version."""

    rel_path: str
    content: str = ITEM_DEFAULT_CONTENT
    root_dir: str = ""

    def with_content(self, *args: str) -> ItemMock:
        return replace(self, content="\n".join(args))

    def abs_path(self) -> str:
        return os.path.join(self.root_dir, self.rel_path)

    def create(self, root_dir: str) -> ItemMock:
        """Write the item file below root_dir."""
        _check_root_dir(self.root_dir, root_dir)
        self.root_dir = root_dir
        os.makedirs(os.path.dirname(self.abs_path()), exist_ok=True)
        _write_file(self.abs_path(), self.content)
        return self


@dataclass
class VersionMock:
    """A mocked product version directory."""

    rel_path: str
    items: tuple[ItemMock, ...] = ()
    checksums: str = ""
    image_config: str = ""
    age: timedelta = timedelta(0)
    root_dir: str = ""

    def with_files(self, *args: str) -> VersionMock:
        return replace(self, items=self.items + tuple(mock_item(name) for name in args))

    def add_items(self, *args: ItemMock) -> VersionMock:
        return replace(self, items=self.items + tuple(args))

    def set_checksums(self, *args: str) -> VersionMock:
        return replace(self, checksums="\n".join(args) + "\n")

    def set_image_config(self, *args: str) -> VersionMock:
        return replace(self, image_config="\n".join(args))

    def with_age(self, age: timedelta) -> VersionMock:
        return replace(self, age=age)

    def abs_path(self) -> str:
        return os.path.join(self.root_dir, self.rel_path)

    def create(self, root_dir: str) -> VersionMock:
        """Create the version directory with its items, checksums and config."""
        _check_root_dir(self.root_dir, root_dir)
        self.root_dir = root_dir
        os.makedirs(self.abs_path(), exist_ok=True)

        for item in self.items:
            replace(item).create(self.abs_path())

        if self.checksums:
            _write_file(os.path.join(self.abs_path(), FILE_CHECKSUM_SHA256), self.checksums)

        if self.image_config:
            _write_file(os.path.join(self.abs_path(), FILE_IMAGE_CONFIG), self.image_config)

        if self.age > timedelta(0):
            _set_files_age(self.abs_path(), self.age)

        return self


@dataclass
class ProductMock:
    """A mocked product directory with its versions."""

    rel_path: str
    versions: tuple[VersionMock, ...] = ()
    catalog_after_version: str = ""
    age: timedelta = timedelta(0)
    age_after_version: str = ""
    root_dir: str = ""

    def _checkpoint(self) -> str:
        return self.versions[-1].rel_path if self.versions else "."

    def add_versions(self, *args: VersionMock) -> ProductMock:
        return replace(self, versions=self.versions + tuple(args))

    def add_product_catalog(self) -> ProductMock:
        """Build the product catalog once the versions added so far exist."""
        return replace(self, catalog_after_version=self._checkpoint())

    def set_files_age(self, age: timedelta) -> ProductMock:
        """Age all files once the versions added so far exist."""
        return replace(self, age=age, age_after_version=self._checkpoint())

    def stream_name(self) -> str:
        return self.rel_path.split("/", 1)[0]

    def abs_path(self) -> str:
        return os.path.join(self.root_dir, self.rel_path)

    def create(self, root_dir: str) -> ProductMock:
        """Create the product tree, building the catalog and ageing files at checkpoints."""
        _check_root_dir(self.root_dir, root_dir)
        self.root_dir = root_dir
        os.makedirs(self.abs_path(), exist_ok=True)

        def after(version: str) -> None:
            if version == self.catalog_after_version:
                _mock_product_catalog(self.root_dir, self.stream_name())
            if version == self.age_after_version:
                _set_files_age(self.root_dir, self.age)

        after(".")
        for version in self.versions:
            replace(version).create(self.abs_path())
            after(version.rel_path)

        return self


def mock_item(name: str) -> ItemMock:
    """Create an item mock holding the default content."""
    return ItemMock(rel_path=name)


def mock_version(version_rel_path: str) -> VersionMock:
    """Create an empty version mock."""
    return VersionMock(rel_path=version_rel_path)


def mock_product(product_rel_path: str) -> ProductMock:
    """Create an empty product mock."""
    return ProductMock(rel_path=product_rel_path)


def _mock_product_catalog(root_dir: str, stream_name: str) -> None:
    meta_dir = os.path.join(root_dir, "streams", "v1")
    products = get_products(root_dir, stream_name)
    catalog = new_catalog(stream_name, products)
    os.makedirs(meta_dir, exist_ok=True)
    write_json_file(os.path.join(meta_dir, f"{stream_name}.json"), catalog)


def _set_files_age(path: str, age: timedelta) -> None:
    stamp = time.time() - age.total_seconds()
    for dirpath, _dirnames, filenames in os.walk(path):
        os.utime(dirpath, (stamp, stamp))
        for name in filenames:
            os.utime(os.path.join(dirpath, name), (stamp, stamp))