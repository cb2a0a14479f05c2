"""Tiny Viber: natural-language code changes delivered as pull requests."""

__version__ = "0.3.0"
