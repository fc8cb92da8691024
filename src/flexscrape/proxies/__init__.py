"""Egress proxy pool."""

from flexscrape.proxies.pool import ProxyEndpoint, ProxyHealth, ProxyPool, is_proxy_error

__all__ = ["ProxyEndpoint", "ProxyHealth", "ProxyPool", "is_proxy_error"]
