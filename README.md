# simplestream-maintainer

Maintains a simplestream image server laid out on disk. It scans image
directories, writes the product catalog and stream index (plain and
gzip-compressed), generates delta files between consecutive image versions,
and prunes old, dangling or empty parts of the tree.

## Directory layout

Images are expected under
`<path>/<stream>/<distro>/<release>/<arch>/<variant>/<version>/`.
A version is complete when it holds the metadata file `lxd.tar.xz` and at
least one root filesystem (`*.squashfs` or `*.qcow2`). Versions whose
directory name starts with a dot are treated as partially uploaded and are
skipped.

An optional `SHA256SUMS` file in a version is used to verify its items: a
new version whose item checksums do not match is left out of the catalog.
An optional `image.yaml` with a `simplestream` section supplies the
distribution name (`distro_name`), release aliases (`release_aliases`) and
requirements (`requirements`, optionally filtered by `releases`,
`architectures` and `variants`).

Catalogs and the index are written to `<path>/streams/<stream-version>/`
as `<stream>.json`, `<stream>.json.gz`, `index.json` and `index.json.gz`.
Each file is written to a hidden temporary file first and moved into place
once all files are ready, the index last.

## Installation

```
pip install .
```

Delta generation calls the external `xdelta3` program, which must be on
`PATH`. If it is missing or fails, the delta is skipped and an error is
logged; the build itself still succeeds.

## Usage

Build the catalog and index:

```
simplestream-maintainer build /srv/images --image-dir images --workers 4
```

Options for `build`:

- `--stream-version` (default `v1`)
- `-d`, `--image-dir` (default `images`; may be repeated or comma separated)
- `--workers` (default: half the CPU count, at least 1)

Prune old versions, keeping the ten latest builds of each product:

```
simplestream-maintainer prune /srv/images --retain-builds 10 --dangling
```

Options for `prune`:

- `--dangling` first removes products and versions on disk that the
  catalog does not reference and that are older than 6 hours; nothing is
  removed when the catalog holds no products
- `--retain-builds` (default `10`, must be at least 1)
- `--retain-days` (default `0`, disabled)
- `--stream-version` and `-d`/`--image-dir` as for `build`

After pruning, empty directories below the path are removed.

Global options: `--timeout` (seconds, `0` for none; uses `SIGALRM` where
available), `--loglevel` (`debug`, `info`, `warn`, `error`) and
`--logformat` (`text`, `json`). Logs go to standard error. `--version`
prints the version. The command exits with status 1 on any error.

## Library use

```python
from simplestream_maintainer.build import build_index, build_product_catalog
from simplestream_maintainer.prune import prune_stream_product_versions
from simplestream_maintainer.stream import get_products, read_catalog

build_index("/srv/images", "v1", ["images"], workers=2)
products = get_products("/srv/images", "images")
catalog = read_catalog("/srv/images/streams/v1/images.json")
prune_stream_product_versions("/srv/images", "v1", "images", retain_builds=3)
```

Modules:

- `simplestream_maintainer.stream` – `Item`, `Version`, `Product`,
  `ProductCatalog`, `get_products`, `get_product`, `get_version`,
  `get_item`, `read_checksum_file`, `create_aliases`, `file_hash`,
  `read_catalog`, `write_json_file`, and the errors `StreamError`,
  `VersionIncompleteError`, `InvalidImageConfigError` and
  `ProductInvalidPathError`.
- `simplestream_maintainer.index` – `StreamIndex` and `StreamIndexEntry`.
- `simplestream_maintainer.build` – `build_index`, `build_product_catalog`,
  `diff_products`, `gzip_file`.
- `simplestream_maintainer.prune` – `prune_stream_product_versions`,
  `prune_dangling_product_versions`, `prune_empty_dirs`.
- `simplestream_maintainer.webpage` – `new_web_page` builds the data for a
  page listing the hosted images (`WebPage`, `WebPageImage`,
  `WebPageImageVersion`, `WebPageImageFile`), plus `format_size` and
  `format_time`.
- `simplestream_maintainer.testutils` – `mock_product`, `mock_version` and
  `mock_item` lay out mocked product trees on disk for tests.
- `simplestream_maintainer.cli` – `main`, `build_parser`,
  `set_default_logger`.

## What it does not do

The package does not render an `index.html` page: `new_web_page` only
collects the page's data, and the `build` command has no option to write a
web page. It does not serve the images over HTTP either; host the directory
with a web server of your choice.