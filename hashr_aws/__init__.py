"""AWS image importer for HashR."""

__version__ = "0.1.0"
