"""Greypool: a replicated storage pool built from independent drives."""

__version__ = "0.1.0"
