"""Obfuscating UDP relay for WireGuard traffic, with its packet transform and configuration parsing."""

__version__ = "1.1.0"
__all__ = ["__version__"]