"""Network-server client and connection pool."""
from .client import NetworkServerHttpClient
from .pool import NetworkServerClientPool, build_ssl_context

__all__ = ["NetworkServerHttpClient", "NetworkServerClientPool", "build_ssl_context"]
