"""Blogging backend: cookie sessions and referential integrity over a JSON document store."""

__version__ = '1.0.0'
