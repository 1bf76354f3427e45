"""Shipyard: test, build, scan and deploy pipelines for containerized services."""

from importlib.metadata import metadata

_meta = metadata("shipyard")

__version__ = _meta["Version"]
__description__ = _meta["Summary"]
