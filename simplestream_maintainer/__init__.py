"""Build and prune simplestream image catalogs and indexes from a directory tree."""

__version__ = "0.0.1"