"""WellWallet server entry point: ``python -m wellwallet.core.server.main``."""

from __future__ import annotations

import logging
from ipaddress import ip_address

from wellwallet.core.config.settings import get_settings
from wellwallet.core.server.app import create_app


def _is_loopback_host(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def run() -> None:
    """Start the WellWallet MCP server with Streamable HTTP transport."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.wellwallet_log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    logger = logging.getLogger(__name__)
    if not settings.wellwallet_allow_insecure_bind and not _is_loopback_host(
        settings.wellwallet_host
    ):
        raise RuntimeError(
            "Refusing to bind the record server to a non-loopback host: it serves "
            "health records and has no auth layer. "
            "Set WELLWALLET_ALLOW_INSECURE_BIND=true to override (unsafe)."
        )
    logger.info(
        "Starting WellWallet record server on %s:%d",
        settings.wellwallet_host,
        settings.wellwallet_port,
    )

    mcp = create_app(settings=settings)
    mcp.run(
        transport="streamable-http",
        host=settings.wellwallet_host,
        port=settings.wellwallet_port,
    )


if __name__ == "__main__":
    run()
