[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "simplestream-maintainer"
version = "0.0.1"
description = "Build and prune simplestream image indexes and product catalogs from a directory tree"
requires-python = ">=3.10"
keywords = ["simplestreams", "images", "lxd", "catalog", "mirror"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Software Distribution",
]
dependencies = [
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
simplestream-maintainer = "simplestream_maintainer.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["simplestream_maintainer"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
