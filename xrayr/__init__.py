"""Clients for the PMPanel and ProxyPanel node APIs, with a byte-counting writer."""

__version__ = "0.1.0"
__all__ = ["models", "stats", "pmpanel", "proxypanel"]