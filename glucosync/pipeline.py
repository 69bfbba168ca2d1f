"""Explicit wiring of the acquisition pipeline.

Every component receives its collaborators here; nothing reaches for a
process-wide singleton.  Tests build a pipeline with an in-memory vault,
an in-memory SQLite store and a mocked HTTP transport.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

import httpx

from glucosync.config import Settings
from glucosync.config_loader import PipelineConfig, get_pipeline_config, load_pipeline_config
from glucosync.models import utc_now
from glucosync.sources.hybrid import HybridSource
from glucosync.sources.informal import InformalSourceClient
from glucosync.sources.official import OfficialSourceClient
from glucosync.store import ReadingStore
from glucosync.sync.backfill import BackfillOrchestrator
from glucosync.sync.coordinator import SyncCoordinator
from glucosync.sync.lifecycle import AppLifecycleMonitor
from glucosync.vault import CredentialVault, FileCredentialVault

logger = logging.getLogger("glucosync.pipeline")


@dataclass
class Pipeline:
    config: PipelineConfig
    vault: CredentialVault
    official: OfficialSourceClient
    informal: InformalSourceClient
    hybrid: HybridSource
    store: ReadingStore
    coordinator: SyncCoordinator
    lifecycle: AppLifecycleMonitor

    def backfill(self) -> BackfillOrchestrator:
        return BackfillOrchestrator(self.hybrid, self.store, self.config)

    async def aclose(self) -> None:
        """Stop the loop and release HTTP clients and the database engine."""
        await self.lifecycle.aclose()
        self.coordinator.stop()
        await self.coordinator.wait_stopped()
        await self.official.aclose()
        await self.informal.aclose()
        await self.store.dispose()
        logger.info("Pipeline closed")


def build_pipeline(
    settings: Settings,
    config: PipelineConfig | None = None,
    vault: CredentialVault | None = None,
    http_client: httpx.AsyncClient | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> Pipeline:
    """Construct every component from settings.

    Args:
        settings:    Deployment settings.
        config:      Pipeline tuning; loaded from ``settings.pipeline_config_path``
                     or the bundled YAML when omitted.
        vault:       Credential vault; a FileCredentialVault under
                     ``settings.vault_dir`` when omitted.
        http_client: Shared httpx client for both feeds (tests inject a mock).
        clock:       Naive-UTC clock shared by all components.
    """
    if config is None:
        if settings.pipeline_config_path:
            config = load_pipeline_config(Path(settings.pipeline_config_path))
        else:
            config = get_pipeline_config()
    if vault is None:
        vault = FileCredentialVault(settings.vault_dir)

    official = OfficialSourceClient(
        vault,
        config,
        client_id=settings.official_client_id,
        client_secret=settings.official_client_secret,
        redirect_uri=settings.official_redirect_uri,
        environment=settings.official_environment,
        http_client=http_client,
        clock=clock,
    )
    informal = InformalSourceClient(
        vault,
        config,
        server=settings.informal_server,
        application_id=settings.informal_application_id,
        http_client=http_client,
        clock=clock,
    )
    hybrid = HybridSource(official, informal, config, clock=clock)
    store = ReadingStore.from_url(settings.database_url, config, clock=clock)
    coordinator = SyncCoordinator(hybrid, store, config, clock=clock)
    lifecycle = AppLifecycleMonitor(coordinator, config)

    logger.info(
        "Pipeline built: official=%s informal=%s split offset=%s",
        settings.official_environment,
        settings.informal_server,
        config.split_offset,
    )
    return Pipeline(
        config=config,
        vault=vault,
        official=official,
        informal=informal,
        hybrid=hybrid,
        store=store,
        coordinator=coordinator,
        lifecycle=lifecycle,
    )
