"""Caching proxy for Nix binary caches."""

__version__ = "0.1.0"
