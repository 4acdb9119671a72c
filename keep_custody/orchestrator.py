"""
Keep Custody — service bootstrap.

Wires one keep from settings:
1. Opens (and if needed creates) the ledger database
2. Builds the execution runtime
3. Attaches the optional metadata fallback source
4. Constructs the Keep and installs it at its own address

Usage:
    python -m keep_custody.orchestrator
"""

from __future__ import annotations

import logging

import structlog

from keep_custody.authority.keep import Keep
from keep_custody.config import KeepSettings, settings
from keep_custody.integrations.metadata import HttpUriFetcher
from keep_custody.ledger.service import LedgerService
from keep_custody.runtime.local import LocalRuntime

logger = logging.getLogger(__name__)


def configure_logging(config: KeepSettings = settings) -> None:
    """Configure structured logging."""
    logging.basicConfig(level=config.log_level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if config.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bootstrap(config: KeepSettings = settings) -> Keep:
    """Build a ready-to-use keep (initialized or not) from settings."""
    ledger = LedgerService(config.database_url)
    ledger.initialize()

    runtime = LocalRuntime(chain_id=config.chain_id)

    fetcher = None
    if config.metadata_base_url:
        fetcher = HttpUriFetcher(config.metadata_base_url, timeout=config.metadata_timeout)

    keep = Keep(config.keep_address, runtime, ledger, uri_fetcher=fetcher)
    runtime.install(keep.address, keep)

    logger.info(
        "Keep bootstrapped: address=%s chain_id=%d initialized=%s",
        keep.address, runtime.chain_id, keep.initialized,
    )
    return keep


def main() -> None:
    configure_logging()
    log = structlog.get_logger()

    keep = bootstrap()
    status = keep.status()
    log.info(
        "keep_custody.orchestrator.ready",
        address=status.address,
        chain_id=status.chain_id,
        initialized=status.initialized,
        nonce=status.nonce,
        quorum=status.quorum,
        total_weight=status.total_weight,
    )


if __name__ == "__main__":
    main()
