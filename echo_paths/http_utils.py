"""
HTTP Client Utilities

Provides the configured async HTTP client used by the chat-completion
client, with:
- SSL certificate handling (certifi bundle)
- Proxy support
- Bounded timeouts
"""

import logging
from typing import Any

import httpx

from .config import AppConfig


logger = logging.getLogger(__name__)


def build_timeout(timeout: float | None = None, connect: float = 10.0) -> httpx.Timeout:
    """Build an httpx timeout that never waits unbounded."""
    return httpx.Timeout(timeout or 30.0, connect=connect)


def create_httpx_client(
    config: AppConfig,
    timeout: float | None = None,
    **kwargs: Any
) -> httpx.AsyncClient:
    """
    Create an httpx AsyncClient configured for the current environment.

    Args:
        config: Application config (SSL and proxy settings)
        timeout: Override default timeout
        **kwargs: Additional arguments to pass to httpx.AsyncClient
            (tests pass ``transport=httpx.MockTransport(...)``)

    Returns:
        Configured AsyncClient
    """
    client_kwargs: dict[str, Any] = {
        "verify": config.ssl.get_ssl_context(),
        "timeout": build_timeout(timeout, connect=config.llm.connect_timeout),
        "follow_redirects": True,
    }

    # httpx 0.25+ uses mounts for per-protocol proxies
    proxy_dict = config.proxy.get_proxy_dict()
    if proxy_dict and "transport" not in kwargs:
        client_kwargs["mounts"] = {
            protocol: httpx.AsyncHTTPTransport(proxy=proxy_url, verify=client_kwargs["verify"])
            for protocol, proxy_url in proxy_dict.items()
        }
        logger.debug(f"Proxy mounts configured for {', '.join(proxy_dict)}")

    client_kwargs.update(kwargs)

    return httpx.AsyncClient(**client_kwargs)
