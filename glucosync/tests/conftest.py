"""Shared fixtures and fakes for GlucoSync tests."""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio

from glucosync.config_loader import PipelineConfig, build_pipeline_config
from glucosync.models import InformalAccount, OAuthCredential, Reading, SourceTag
from glucosync.sources.informal import InformalSourceClient
from glucosync.sources.official import OfficialSourceClient
from glucosync.store import ReadingStore
from glucosync.vault import MemoryCredentialVault

# Fixtures directory
FIXTURES_DIR = Path(__file__).parent / "fixtures"

# Fixed "now" used by every clock-driven test
TEST_NOW = datetime(2026, 3, 1, 12, 0, 0)

OFFICIAL_BASE = "https://api.dexcom.eu"
INFORMAL_BASE = "https://shareous1.dexcom.com"
SESSION_ID = "6a3f8c2e-1b4d-4e5f-9a8b-7c6d5e4f3a2b"
ACCOUNT_ID = "0e1d2c3b-4a59-4687-9786-a5b4c3d2e1f0"


class FakeClock:
    """Callable clock returning a settable naive-UTC time."""

    def __init__(self, now: datetime = TEST_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def make_reading(
    minutes_ago: float = 0,
    value: float = 120.0,
    source_tag: SourceTag = SourceTag.INFORMAL,
    now: datetime = TEST_NOW,
    **kwargs,
) -> Reading:
    return Reading(timestamp=now - timedelta(minutes=minutes_ago), value=value, source_tag=source_tag, **kwargs)


def share_date(ts: datetime) -> str:
    """Render ``ts`` the way the informal feed does."""
    millis = int((ts - datetime(1970, 1, 1)).total_seconds() * 1000)
    return f"Date({millis})"


def share_entry(ts: datetime, value: float, trend: str = "Flat") -> dict:
    return {"WT": share_date(ts), "ST": share_date(ts), "DT": share_date(ts)[:-1] + "+0100)", "Value": value, "Trend": trend}


def egv_record(ts: datetime, value: float, trend: str = "flat") -> dict:
    return {
        "recordId": f"rec-{int(ts.timestamp())}",
        "systemTime": ts.strftime("%Y-%m-%dT%H:%M:%S"),
        "displayTime": ts.strftime("%Y-%m-%dT%H:%M:%S"),
        "value": value,
        "trend": trend,
        "unit": "mg/dL",
        "transmitterGeneration": "g7",
        "displayDevice": "iOS",
    }


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    """The bundled config."""
    return build_pipeline_config()


@pytest.fixture
def fast_config() -> PipelineConfig:
    """Bundled config with loop timings shrunk for fast tests."""
    return build_pipeline_config(
        {
            "sync": {
                "live_interval_seconds": 0.01,
                "idle_interval_seconds": 0.01,
                "max_interval_seconds": 0.2,
                "live_interest_window_seconds": 60,
                "max_run_minutes": 1,
                "foreground_debounce_seconds": 0.05,
            },
            "backfill": {"rate_limit_ms": 0},
        }
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Vault / credential fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def vault() -> MemoryCredentialVault:
    return MemoryCredentialVault()


@pytest.fixture
def connected_vault(vault: MemoryCredentialVault) -> MemoryCredentialVault:
    """Vault holding a valid official credential and an informal account."""
    vault.store(
        OfficialSourceClient.VAULT_KEY,
        OAuthCredential(
            access_token="access-1",
            refresh_token="refresh-1",
            expires_at=TEST_NOW + timedelta(hours=2),
        ).to_bytes(),
    )
    vault.store(InformalSourceClient.ACCOUNT_KEY, InformalAccount("follower@example.com", "pa55word").to_bytes())
    return vault


# ---------------------------------------------------------------------------
# JSON fixture loaders
# ---------------------------------------------------------------------------


@pytest.fixture
def official_egvs_raw() -> dict:
    return json.loads((FIXTURES_DIR / "official_egvs.json").read_text())


@pytest.fixture
def informal_values_raw() -> list:
    return json.loads((FIXTURES_DIR / "informal_values.json").read_text())


# ---------------------------------------------------------------------------
# Store fixture
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def store(pipeline_config: PipelineConfig, clock: FakeClock):
    """Empty in-memory SQLite store."""
    reading_store = ReadingStore.from_url("sqlite+aiosqlite://", pipeline_config, clock=clock)
    await reading_store.create_schema()
    yield reading_store
    await reading_store.dispose()
