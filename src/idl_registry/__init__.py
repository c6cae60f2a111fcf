"""Distribute Thrift IDL files through a shared git registry."""

__version__ = "0.1.0"

__all__ = ["__version__"]
