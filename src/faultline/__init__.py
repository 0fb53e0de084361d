"""Error classification and response-envelope translation for HTTP services."""

__version__ = "0.1.0"
