"""WellWallet MCP server: application factory.

This module provides:
- create_app() for testability (integration tests create fresh server instances)
- Module-level `mcp` variable for FastMCP discovery (fastmcp.json points here)
"""

from __future__ import annotations

import logging

from fastmcp import FastMCP

from wellwallet.core.audit.logger import AuditLogger
from wellwallet.core.config.settings import Settings, get_settings
from wellwallet.core.gateway.client import GatewayClient
from wellwallet.core.llm.provider import LLMProvider
from wellwallet.core.storage.database import RecordDatabase
from wellwallet.core.storage.encryption import DocumentCipher
from wellwallet.core.storage.repository import LocalRecordStore
from wellwallet.domains.records.catalog import ResourceCatalog, load_catalog
from wellwallet.domains.records.fetcher import ResourceFetcher
from wellwallet.domains.records.interpreter import QueryInterpreter, create_interpreter
from wellwallet.domains.records.query.router import QueryRouter
from wellwallet.domains.records.sync import SyncOrchestrator
from wellwallet.domains.records.tools.record_tools import register_record_tools

logger = logging.getLogger(__name__)

SERVER_NAME = "WellWallet Records"
VERSION = "0.1.0"


def create_app(
    *,
    settings: Settings | None = None,
    gateway_client_override: GatewayClient | None = None,
    database_override: RecordDatabase | None = None,
    catalog_override: ResourceCatalog | None = None,
    interpreter_override: QueryInterpreter | None = None,
    llm_provider_override: LLMProvider | None = None,
) -> FastMCP:
    """Create and configure the WellWallet MCP server.

    This is the main application factory. It:
    1. Creates the FastMCP server instance
    2. Opens the local record cache (encrypted when a key is configured)
    3. Creates the gateway client
    4. Wires the fetcher, sync orchestrator, query router and interpreter
    5. Registers all tools
    """
    settings = settings or get_settings()

    # --- Server instance ---
    server = FastMCP(
        SERVER_NAME,
        instructions=(
            "Personal FHIR record wallet. Syncs a patient's records from a "
            "remote FHIR gateway into a local cache and answers questions "
            "about them, preferring the local cache over the network."
        ),
    )

    # --- Local record cache ---
    if database_override is not None:
        database = database_override
    else:
        database = RecordDatabase(settings.db_path)
    database.initialize()
    cipher = DocumentCipher(settings.encryption_key)
    if not cipher.enabled:
        logger.warning(
            "No ENCRYPTION_KEY configured; cached FHIR documents are stored unencrypted"
        )
    store = LocalRecordStore(database, cipher)
    audit_logger = AuditLogger(database)
    logger.info(
        "Record cache at %s (schema v%d)", database.path, database.get_schema_version()
    )

    # --- Gateway client ---
    if gateway_client_override is not None:
        client = gateway_client_override
    else:
        client = GatewayClient(
            settings.gateway_url,
            api_key=settings.gateway_api_key,
            protocol_version=settings.gateway_protocol_version,
            timeout=settings.gateway_timeout_seconds,
            retry_backoff=settings.gateway_backoff_base_seconds,
            degraded_failure_limit=settings.gateway_degraded_failure_limit,
        )
        logger.info("Gateway client configured for %s", settings.gateway_url)

    # --- Records domain ---
    catalog = catalog_override or load_catalog()
    fetcher = ResourceFetcher(
        client,
        store,
        catalog,
        page_size=settings.effective_page_size,
        max_pages=settings.sync_max_pages,
        retry_attempts=settings.gateway_retry_attempts,
        backoff_base=settings.gateway_backoff_base_seconds,
    )
    orchestrator = SyncOrchestrator(
        client,
        store,
        fetcher,
        catalog,
        audit=audit_logger,
        progress_buffer=settings.sync_progress_buffer,
    )
    router = QueryRouter(client, store, catalog, audit=audit_logger)
    interpreter = interpreter_override or create_interpreter(
        settings, catalog, provider=llm_provider_override
    )
    logger.info("Query interpreter: %s", type(interpreter).__name__)

    # --- Register tools ---
    @server.tool
    def health_check() -> dict:
        """Check server health and return basic status information."""
        return {
            "status": "ok",
            "server": SERVER_NAME,
            "version": VERSION,
            "gateway_url": client.url,
            "session_state": client.state.value,
            "encryption_enabled": cipher.enabled,
            "resource_types": catalog.names,
            "records_cached": store.count_resources(),
            "interpreter": type(interpreter).__name__,
        }

    register_record_tools(
        server,
        client=client,
        store=store,
        orchestrator=orchestrator,
        router=router,
        interpreter=interpreter,
        audit_logger=audit_logger,
    )
    logger.info("Record tools registered")

    return server


# Module-level instance for FastMCP discovery (fastmcp.json: "server": "...app.py:mcp").
# Lazy: only created when this module is loaded directly (not when tests import create_app).
def __getattr__(name: str):
    if name == "mcp":
        global mcp  # noqa: PLW0603
        mcp = create_app()
        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
