"""Tink bank-connection OAuth core and HTTP service."""

__version__ = "0.1.0"
