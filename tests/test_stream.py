import os

import pytest

from simplestream_maintainer.stream import (
    InvalidImageConfigError,
    Item,
    Product,
    ProductCatalog,
    ProductInvalidPathError,
    Version,
    VersionIncompleteError,
    create_aliases,
    file_hash,
    get_item,
    get_product,
    get_products,
    get_version,
    new_catalog,
    read_catalog,
    read_checksum_file,
    write_json_file,
)

DEFAULT_CONTENT = "test-content"
DEFAULT_SHA = "0a3666a0710c08aa6d0de92ce72beeb5b93124cce1bf3701c9d6cdeb543cb73e"
COMBINED_SHA = "d9da2d2151ce5c89dfb8e1c329b286a02bd8464deb38f0f4d858486a27b796bf"


def write_file(path, content=DEFAULT_CONTENT):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)


def make_version(root, rel, files=(), checksums=None, config=None):
    directory = root / rel
    directory.mkdir(parents=True, exist_ok=True)
    for name in files:
        write_file(directory / name)
    if checksums is not None:
        (directory / "SHA256SUMS").write_text("\n".join(checksums) + "\n")
    if config is not None:
        (directory / "image.yaml").write_text("\n".join(config))


def make_product(root, rel, versions=()):
    (root / rel).mkdir(parents=True, exist_ok=True)
    for spec in versions:
        name, files = spec[0], spec[1]
        config = spec[2] if len(spec) > 2 else None
        make_version(root, os.path.join(rel, name), files, config=config)


@pytest.mark.parametrize(
    "name, content, calc, expected",
    [
        ("lxd.tar.xz", "test-content", False, Item(size=12, path="lxd.tar.xz", ftype="lxd.tar.xz")),
        (
            "disk.qcow2",
            "VM",
            True,
            Item(
                size=2,
                path="disk.qcow2",
                ftype="disk-kvm.img",
                sha256="8e5abdd396d535012cb3b24b6c998ab6d8f8118fe5c564c21c624c54964464e6",
            ),
        ),
        (
            "root.squashfs",
            "container",
            True,
            Item(
                size=9,
                path="root.squashfs",
                ftype="squashfs",
                sha256="a42d519714d616e9411dbceec4b52808bd6b1ee53e6f6497a281d655357d8b71",
            ),
        ),
        (
            "test/delta.123123.vcdiff",
            "vcdiff",
            False,
            Item(size=6, path="test/delta.123123.vcdiff", ftype="squashfs.vcdiff", delta_base="123123"),
        ),
        (
            "test/delta-123.qcow2.vcdiff",
            "",
            False,
            Item(size=0, path="test/delta-123.qcow2.vcdiff", ftype="disk-kvm.img.vcdiff", delta_base="delta-123"),
        ),
    ],
)
def test_get_item(tmp_path, name, content, calc, expected):
    write_file(tmp_path / name, content)
    assert get_item(str(tmp_path), name, calc_hashes=calc) == expected


@pytest.mark.parametrize(
    "rel, files",
    [
        ("20141010_1212", ["lxd.tar.xz"]),
        ("20241010_1212", ["rootfs.squashfs", "disk.qcow2"]),
        (".20241010_1212", ["lxd.tar.xz", "disk.qcow2"]),
    ],
)
def test_get_version_incomplete(tmp_path, rel, files):
    make_version(tmp_path, rel, files)
    with pytest.raises(VersionIncompleteError):
        get_version(str(tmp_path), rel)


def test_get_version_incomplete_included(tmp_path):
    make_version(tmp_path, ".hidden", ["lxd.tar.xz"])
    version = get_version(str(tmp_path), ".hidden", include_incomplete=True)
    assert list(version.items) == ["lxd.tar.xz"]
    assert version.incomplete is True


def _with_paths(rel, items):
    return {name: Item(**{**vars(item), "path": os.path.join(rel, name)}) for name, item in items.items()}


def test_get_version_without_hashes(tmp_path):
    make_version(tmp_path, "v10", ["lxd.tar.xz", "disk.qcow2", "rootfs.squashfs"])
    version = get_version(str(tmp_path), "v10")
    expected = _with_paths(
        "v10",
        {
            "lxd.tar.xz": Item(size=12, ftype="lxd.tar.xz"),
            "disk.qcow2": Item(size=12, ftype="disk-kvm.img"),
            "rootfs.squashfs": Item(size=12, ftype="squashfs"),
        },
    )
    assert version.items == expected


def test_get_version_with_hashes(tmp_path):
    make_version(tmp_path, "v10", ["lxd.tar.xz", "disk.qcow2", "rootfs.squashfs"])
    version = get_version(str(tmp_path), "v10", calc_hashes=True)
    expected = _with_paths(
        "v10",
        {
            "lxd.tar.xz": Item(
                size=12,
                ftype="lxd.tar.xz",
                sha256=DEFAULT_SHA,
                combined_sha256_disk_kvm_img=COMBINED_SHA,
                combined_sha256_squashfs=COMBINED_SHA,
            ),
            "disk.qcow2": Item(size=12, ftype="disk-kvm.img", sha256=DEFAULT_SHA),
            "rootfs.squashfs": Item(size=12, ftype="squashfs", sha256=DEFAULT_SHA),
        },
    )
    assert version.items == expected


def test_get_version_with_hashes_and_deltas(tmp_path):
    make_version(
        tmp_path,
        "v10",
        ["lxd.tar.xz", "disk.qcow2", "rootfs.squashfs", "delta.2013_12_31.vcdiff", "delta.2024_12_31.qcow2.vcdiff"],
    )
    version = get_version(str(tmp_path), "v10", calc_hashes=True)
    expected = _with_paths(
        "v10",
        {
            "lxd.tar.xz": Item(
                size=12,
                ftype="lxd.tar.xz",
                sha256=DEFAULT_SHA,
                combined_sha256_disk_kvm_img=COMBINED_SHA,
                combined_sha256_squashfs=COMBINED_SHA,
            ),
            "disk.qcow2": Item(size=12, ftype="disk-kvm.img", sha256=DEFAULT_SHA),
            "rootfs.squashfs": Item(size=12, ftype="squashfs", sha256=DEFAULT_SHA),
            "delta.2013_12_31.vcdiff": Item(
                size=12, ftype="squashfs.vcdiff", sha256=DEFAULT_SHA, delta_base="2013_12_31"
            ),
            "delta.2024_12_31.qcow2.vcdiff": Item(
                size=12, ftype="disk-kvm.img.vcdiff", sha256=DEFAULT_SHA, delta_base="2024_12_31"
            ),
        },
    )
    assert version.items == expected


def test_get_version_reads_checksums(tmp_path):
    make_version(tmp_path, "v1", ["lxd.tar.xz", "disk.qcow2"], checksums=["abc  disk.qcow2"])
    assert get_version(str(tmp_path), "v1").checksums == {"disk.qcow2": "abc"}


@pytest.mark.parametrize(
    "rel",
    ["images/ubuntu/noble/amd64/desktop/2024.04.01", "images/ubuntu/noble/amd64"],
)
def test_get_product_invalid_path(tmp_path, rel):
    (tmp_path / rel).mkdir(parents=True)
    with pytest.raises(ProductInvalidPathError):
        get_product(str(tmp_path), rel)


def test_get_product_not_a_directory(tmp_path):
    write_file(tmp_path / "s/d/r/a/v")
    with pytest.raises(ProductInvalidPathError, match="not a directory"):
        get_product(str(tmp_path), "s/d/r/a/v")


def test_get_product_invalid_config(tmp_path):
    rel = "stream/distro/release/arch/variant"
    make_product(tmp_path, rel, [("2024_01_01", ["lxd.tar.xz", "root.squashfs"], ["invalid::config"])])
    with pytest.raises(InvalidImageConfigError):
        get_product(str(tmp_path), rel)


def _product_summary(product):
    return (
        product.aliases,
        product.distro,
        product.os,
        product.release,
        product.release_title,
        product.architecture,
        product.variant,
        product.requirements,
        sorted(product.versions),
    )


@pytest.mark.parametrize(
    "rel, versions, expected",
    [
        (
            "stream/distro/release/arch/config",
            [
                (
                    "2024_01_01",
                    ["lxd.tar.xz", "root.squashfs"],
                    ["simplestream:", "  requirements:", "  - requirements:", "      secure_boot: false"],
                )
            ],
            ("distro/release/config", "distro", "Distro", "release", "release", "arch", "config",
             {"secure_boot": "false"}, ["2024_01_01"]),
        ),
        (
            "stream/distro/myrel/arch/default",
            [
                (
                    "2024_01_01",
                    ["lxd.tar.xz", "root.squashfs"],
                    [
                        "simplestream:",
                        "  release_aliases:",
                        "    myrel: test,test2",
                        "    myrel2: invalid",
                        "  requirements:",
                        "  - requirements:",
                        "      secure_boot: true",
                    ],
                )
            ],
            (
                "distro/myrel/default,distro/myrel,distro/test/default,distro/test,distro/test2/default,distro/test2",
                "distro", "Distro", "myrel", "myrel", "arch", "default", {"secure_boot": "true"}, ["2024_01_01"],
            ),
        ),
        (
            "stream/distro/release/arch/variant",
            [
                (
                    "1",
                    ["lxd.tar.xz", "disk.qcow2"],
                    ["requirements:", "  secure_boot: false", "simplestream:", "  requirements:"],
                )
            ],
            ("distro/release/variant", "distro", "Distro", "release", "release", "arch", "variant", {}, ["1"]),
        ),
        (
            "images/ubuntu-core/noble/amd64/cloud",
            [
                (
                    "1",
                    ["lxd.tar.xz", "disk.qcow2"],
                    [
                        "simplestream:",
                        "  release_aliases:",
                        "    noble: 24",
                        "  requirements:",
                        "  - requirements:",
                        "      secure_boot: true",
                        "      nesting: true",
                    ],
                ),
                (
                    "2",
                    ["lxd.tar.xz", "disk.qcow2"],
                    [
                        "simplestream:",
                        "  distro_name: Ubuntu Core",
                        "  release_aliases:",
                        "    noble: 24.04",
                        "  requirements:",
                        "  - requirements:",
                        "      secure_boot: false",
                        "  - requirements:",
                        "      nesting: false",
                        "    variants:",
                        "    - default",
                        "    - desktop",
                        "  - requirements:",
                        "      custom1: false",
                        "    architectures:",
                        "    - amd64",
                        "  - requirements:",
                        "      custom2: false",
                        "    architectures:",
                        "    - arm64",
                    ],
                ),
            ],
            (
                "ubuntu-core/noble/cloud,ubuntu-core/24.04/cloud", "ubuntu-core", "Ubuntu Core", "noble", "noble",
                "amd64", "cloud", {"secure_boot": "false", "custom1": "false"}, ["1", "2"],
            ),
        ),
        (
            "images/ubuntu/current/arm64/cloud",
            [],
            ("ubuntu/current/cloud,ubuntu/cloud", "ubuntu", "Ubuntu", "current", "current", "arm64", "cloud", {}, []),
        ),
        (
            "images/ubuntu/focal/arm64/default",
            [],
            ("ubuntu/focal/default,ubuntu/focal", "ubuntu", "Ubuntu", "focal", "focal", "arm64", "default", {}, []),
        ),
        (
            "images/ubuntu/focal/amd64/cloud",
            [
                ("2024_01_01", ["lxd.tar.xz", "root.squashfs", "disk.qcow2"]),
                ("2024_01_02", ["lxd.tar.xz", "disk.qcow2"]),
                ("2024_01_03", ["lxd.tar.xz", "root.squashfs"]),
            ],
            ("ubuntu/focal/cloud", "ubuntu", "Ubuntu", "focal", "focal", "amd64", "cloud", {},
             ["2024_01_01", "2024_01_02", "2024_01_03"]),
        ),
        (
            "images/ubuntu/lunar/amd64/cloud",
            [
                ("2024_01_01", ["lxd.tar.xz", "root.squashfs", "disk.qcow2"]),
                ("2024_01_02", ["lxd2.tar.xz", "root.squashfs"]),
                ("2024_01_03", ["root.squashfs", "disk.qcow2"]),
                ("2024_01_04", ["lxd.tar.xz"]),
                (".2024_01_05", ["lxd.tar.xz", "disk.qcow2"]),
            ],
            ("ubuntu/lunar/cloud", "ubuntu", "Ubuntu", "lunar", "lunar", "amd64", "cloud", {}, ["2024_01_01"]),
        ),
    ],
)
def test_get_product(tmp_path, rel, versions, expected):
    make_product(tmp_path, rel, versions)
    assert _product_summary(get_product(str(tmp_path), rel)) == expected


def test_get_product_item_paths(tmp_path):
    rel = "images/ubuntu/xenial/arm64/default"
    make_product(tmp_path, rel, [("2024_01_01", ["lxd.tar.xz", "container.squashfs", "vm.qcow2"])])
    product = get_product(str(tmp_path), rel)
    base = "images/ubuntu/xenial/arm64/default/2024_01_01"
    assert product.aliases == "ubuntu/xenial/default,ubuntu/xenial"
    assert product.versions == {
        "2024_01_01": Version(
            items={
                "lxd.tar.xz": Item(size=12, path=f"{base}/lxd.tar.xz", ftype="lxd.tar.xz"),
                "container.squashfs": Item(size=12, path=f"{base}/container.squashfs", ftype="squashfs"),
                "vm.qcow2": Item(size=12, path=f"{base}/vm.qcow2", ftype="disk-kvm.img"),
            }
        )
    }


def test_get_products(tmp_path):
    make_product(
        tmp_path,
        "images-daily/ubuntu/jammy/amd64/cloud",
        [("2024_01_01", ["lxd.tar.xz", "root.squashfs", "disk.qcow2"])],
    )
    make_product(
        tmp_path,
        "images-daily/ubuntu/jammy/arm64/desktop",
        [
            ("2023", ["lxd.tar.xz", "root.squashfs", "disk.qcow2"]),
            ("2024", ["lxd.tar.xz", "root.squashfs"]),
            ("2025", ["lxd.tar.xz", "disk.qcow2"]),
        ],
    )
    make_product(
        tmp_path,
        "images-daily/alpine/edge/amd64/cloud",
        [
            ("v1", ["lxd.tar.xz"]),
            ("v2", ["disk.qcow2"]),
            ("v3", ["lxd.tar.xz", "disk.qcow2"]),
            ("v4", []),
            ("01", ["lxd.tar.xz"]),
            ("02", ["disk.qcow2"]),
            ("03", []),
        ],
    )
    make_product(tmp_path, "images-daily/alpine/3.19/amd64/cloud")
    make_product(
        tmp_path,
        "images-daily/invalid/product",
        [("one", ["lxd.tar.xz", "disk.qcow2"]), ("two", ["lxd.tar.xz", "root.squashfs"]), ("three", [])],
    )

    products = get_products(str(tmp_path), "images-daily")
    assert {pid: sorted(p.versions) for pid, p in products.items()} == {
        "ubuntu:jammy:amd64:cloud": ["2024_01_01"],
        "ubuntu:jammy:arm64:desktop": ["2023", "2024", "2025"],
        "alpine:edge:amd64:cloud": ["v3"],
    }


def test_get_products_missing_stream(tmp_path):
    with pytest.raises(FileNotFoundError):
        get_products(str(tmp_path), "images")


def test_item_does_not_exist(tmp_path):
    with pytest.raises(FileNotFoundError):
        get_item(str(tmp_path), "lxd.tar.xz")


def test_version_does_not_exist(tmp_path):
    with pytest.raises(FileNotFoundError):
        get_version(str(tmp_path), "20230211_1212")


def test_product_does_not_exist(tmp_path):
    with pytest.raises(FileNotFoundError) as info:
        get_product(str(tmp_path), "images/ubuntu/noble/amd64/desktop")
    assert isinstance(info.value, ProductInvalidPathError)


@pytest.mark.parametrize(
    "entries, expected",
    [
        ([], {}),
        (["SHA  file1", "SHA  file2", "SHA  file3"], {"file1": "SHA", "file2": "SHA", "file3": "SHA"}),
        (["SHA  file1", "", "SHA  file2", ""], {"file1": "SHA", "file2": "SHA"}),
        (["file1", "SHA  file2"], {"file2": "SHA"}),
        (
            ["SHA file1", "MD5  file2 ", "MD5  file3 with spaces", "   MD5   file4   "],
            {"file1": "SHA", "file2": "MD5", "file3 with spaces": "MD5", "file4": "MD5"},
        ),
    ],
)
def test_read_checksum_file(tmp_path, entries, expected):
    path = tmp_path / "checksums"
    path.write_text("\n".join(entries))
    assert read_checksum_file(str(path)) == expected


@pytest.mark.parametrize(
    "distro, release, variant, expected",
    [
        ("ubuntu", "noble", "cloud", ["ubuntu/noble/cloud"]),
        ("ubuntu", "noble", "default", ["ubuntu/noble/default", "ubuntu/noble"]),
        ("ubuntu", "current", "cloud", ["ubuntu/current/cloud", "ubuntu/cloud"]),
        ("ubuntu", "current", "default", ["ubuntu/current/default", "ubuntu/default", "ubuntu"]),
    ],
)
def test_create_aliases(distro, release, variant, expected):
    assert create_aliases(distro, release, variant) == expected


def test_file_hash(tmp_path):
    path = tmp_path / "a"
    write_file(path)
    assert file_hash(str(path)) == DEFAULT_SHA
    assert file_hash(str(path), str(path)) == COMBINED_SHA


def test_product_id_and_rel_path():
    product = Product(distro="ubuntu", release="noble", architecture="amd64", variant="cloud")
    assert product.id() == "ubuntu:noble:amd64:cloud"
    assert product.rel_path() == os.path.join("ubuntu", "noble", "amd64", "cloud")


def test_item_to_dict_omits_empty_fields():
    item = Item(ftype="squashfs.vcdiff", path="a/b.vcdiff", size=3, delta_base="v1")
    assert item.to_dict() == {"ftype": "squashfs.vcdiff", "path": "a/b.vcdiff", "size": 3, "delta_base": "v1"}
    assert list(Item(ftype="x", sha256="s").to_dict()) == ["ftype", "path", "size", "sha256"]


def test_catalog_round_trip(tmp_path):
    catalog = new_catalog(
        "images",
        {
            "d:r:a:v": Product(
                aliases="d/r/v",
                architecture="a",
                distro="d",
                os="D",
                release="r",
                release_title="r",
                variant="v",
                versions={"v1": Version(items={"lxd.tar.xz": Item(ftype="lxd.tar.xz", path="p", size=1)})},
                requirements={"secure_boot": "false"},
            )
        },
    )
    path = tmp_path / "images.json"
    write_json_file(str(path), catalog)
    assert read_catalog(str(path)) == catalog
    assert ProductCatalog.from_dict(catalog.to_dict()) == catalog


def test_write_empty_catalog_format(tmp_path):
    path = tmp_path / "images.json"
    write_json_file(str(path), new_catalog("images"))
    assert path.read_text() == (
        '{"content_id":"images","format":"products:1.0","datatype":"image-downloads","products":{}}\n'
    )


def test_write_json_escapes_html(tmp_path):
    path = tmp_path / "x.json"
    write_json_file(str(path), {"k": "<a&b>"})
    assert path.read_text() == '{"k":"\\u003ca\\u0026b\\u003e"}\n'


def test_catalog_from_dict_missing_versions():
    catalog = ProductCatalog.from_dict(
        {"content_id": "images", "products": {"ubuntu:noble:amd64:cloud": {"distro": "ubuntu", "requirements": {}}}}
    )
    assert catalog.products["ubuntu:noble:amd64:cloud"].versions == {}


def test_read_catalog_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_catalog(str(tmp_path / "missing.json"))