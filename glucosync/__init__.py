"""GlucoSync: continuous glucose reading acquisition and reconciliation.

Pulls readings from two vendor feeds with different latency and
authentication, merges them into one time series, and persists it under
strict integrity rules while a bounded background loop keeps it current.

Subpackages:
    sources/ - Official (OAuth2, delayed) and informal (session, live) feed clients, hybrid router
    sync/    - Polling coordinator, lifecycle debounce, backfill, deduplication
    routers/ - FastAPI endpoints

Core modules:
    models        - Reading, TimeWindow and credential models
    errors        - Exception hierarchy
    vault         - Credential storage
    store         - SQLAlchemy reading store
    config_loader - Load/validate/hot-reload pipeline_config.yaml
    pipeline      - Explicit wiring of all components
"""

from glucosync.config_loader import PipelineConfig, get_pipeline_config
from glucosync.errors import GlucoSyncError
from glucosync.models import Reading, SourceTag, SyncStatus, TimeWindow

__all__ = [
    "Reading",
    "SourceTag",
    "SyncStatus",
    "TimeWindow",
    "GlucoSyncError",
    "PipelineConfig",
    "get_pipeline_config",
]
