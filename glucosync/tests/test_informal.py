"""Tests for the informal feed client: session lifecycle and normalization."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta

import httpx
import pytest

from glucosync.config_loader import PipelineConfig
from glucosync.errors import AuthExpired, InvalidCredentials, NetworkFailure, NotConnected, RateLimited, UnexpectedResponse
from glucosync.models import SessionCredential, SourceTag, TimeWindow
from glucosync.sources.informal import InformalSourceClient, parse_share_date
from glucosync.tests.conftest import ACCOUNT_ID, SESSION_ID, TEST_NOW, FakeClock, share_entry
from glucosync.vault import MemoryCredentialVault

_AUTH = "/ShareWebServices/Services/General/AuthenticatePublisherAccount"
_LOGIN = "/ShareWebServices/Services/General/LoginPublisherAccountById"
_READ = "/ShareWebServices/Services/Publisher/ReadPublisherLatestGlucoseValues"


class FakeShareApi:
    """Stand-in for the informal web service, used as an httpx MockTransport handler."""

    def __init__(self, entries: list[dict] | None = None) -> None:
        self.entries = entries or []
        self.read_responses: list[httpx.Response] = []  # consumed before falling back to entries
        self.login_response: httpx.Response | None = None
        self.session_ids = [SESSION_ID]
        self.login_delay = 0.0
        self.requests: list[httpx.Request] = []

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == _AUTH:
            if self.login_delay:
                await asyncio.sleep(self.login_delay)
            return self.login_response or httpx.Response(200, json=ACCOUNT_ID)
        if path == _LOGIN:
            session_id = self.session_ids[min(len(self.calls(_LOGIN)) - 1, len(self.session_ids) - 1)]
            return httpx.Response(200, json=session_id)
        if path == _READ:
            if self.read_responses:
                return self.read_responses.pop(0)
            return httpx.Response(200, json=self.entries)
        return httpx.Response(404)


def _client(api: FakeShareApi, vault: MemoryCredentialVault, config: PipelineConfig, clock: FakeClock) -> InformalSourceClient:
    client = InformalSourceClient(
        vault,
        config,
        server="international",
        application_id="test-app-id",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(api)),
        clock=clock,
    )
    client.save_account("follower@example.com", "pa55word")
    return client


def _recent_entries(count: int = 3, now: datetime = TEST_NOW) -> list[dict]:
    return [share_entry(now - timedelta(minutes=5 * i), 120 + i) for i in range(count)]


class TestShareDates:
    def test_plain_date(self) -> None:
        assert parse_share_date("Date(1772366100000)") == datetime(2026, 3, 1, 11, 55)

    def test_slashed_date_with_zone_suffix(self) -> None:
        """The milliseconds are UTC; the zone suffix does not shift them."""
        assert parse_share_date("/Date(1772366100000+0100)/") == datetime(2026, 3, 1, 11, 55)

    def test_iso_fallback(self) -> None:
        assert parse_share_date("2026-03-01T12:55:00+01:00") == datetime(2026, 3, 1, 11, 55)

    def test_unparseable(self) -> None:
        assert parse_share_date("yesterday") is None
        assert parse_share_date(None) is None

    @pytest.mark.parametrize("value", ["Date(99999999999999999)", "Date(-99999999999999999)"])
    def test_out_of_range_date_is_none(self, value: str) -> None:
        assert parse_share_date(value) is None


class TestInformalReadings:
    @pytest.mark.asyncio
    async def test_parses_fixture(self, informal_values_raw, vault, pipeline_config, clock) -> None:
        api = FakeShareApi(informal_values_raw)
        readings = await _client(api, vault, pipeline_config, clock).fetch_window(
            TimeWindow.last(timedelta(hours=1), now=TEST_NOW)
        )

        assert [r.value for r in readings] == [139, 146, 152]
        assert [r.timestamp.minute for r in readings] == [45, 50, 55]
        assert readings[1].trend == "FortyFiveUp"  # integer trend 3
        assert all(r.source_tag is SourceTag.INFORMAL for r in readings)

    @pytest.mark.asyncio
    async def test_two_step_login_then_read(self, vault, pipeline_config, clock) -> None:
        api = FakeShareApi(_recent_entries())
        await _client(api, vault, pipeline_config, clock).fetch_latest()

        auth = json.loads(api.calls(_AUTH)[0].content)
        assert auth == {"accountName": "follower@example.com", "password": "pa55word", "applicationId": "test-app-id"}
        login = json.loads(api.calls(_LOGIN)[0].content)
        assert login["accountId"] == ACCOUNT_ID
        read = api.calls(_READ)[0]
        assert read.method == "POST"
        assert read.url.params["sessionId"] == SESSION_ID

    @pytest.mark.asyncio
    async def test_fetch_latest_returns_newest(self, vault, pipeline_config, clock) -> None:
        api = FakeShareApi(_recent_entries())
        latest = await _client(api, vault, pipeline_config, clock).fetch_latest()

        assert latest is not None
        assert latest.timestamp == TEST_NOW
        assert latest.value == 120
        params = api.calls(_READ)[0].url.params
        assert params["minutes"] == "60"
        assert params["maxCount"] == "12"

    @pytest.mark.asyncio
    async def test_fetch_window_reaches_back_to_window_start(self, vault, pipeline_config, clock) -> None:
        api = FakeShareApi(_recent_entries(30))
        window = TimeWindow(TEST_NOW - timedelta(hours=2), TEST_NOW - timedelta(hours=1))

        readings = await _client(api, vault, pipeline_config, clock).fetch_window(window)

        params = api.calls(_READ)[0].url.params
        assert params["minutes"] == "120"
        assert params["maxCount"] == "25"
        assert readings
        assert all(window.contains(r.timestamp) for r in readings)
        assert [r.timestamp for r in readings] == sorted(r.timestamp for r in readings)

    @pytest.mark.asyncio
    async def test_max_count_clamped(self, vault, pipeline_config, clock) -> None:
        api = FakeShareApi()
        window = TimeWindow(TEST_NOW - timedelta(days=3), TEST_NOW)
        await _client(api, vault, pipeline_config, clock).fetch_window(window)

        params = api.calls(_READ)[0].url.params
        assert params["minutes"] == "1440"
        assert params["maxCount"] == "288"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [httpx.Response(404), httpx.Response(200, content=b""), httpx.Response(200, json=[])],
        ids=["404", "empty-body", "empty-list"],
    )
    async def test_no_data_is_empty_not_error(self, response, vault, pipeline_config, clock) -> None:
        api = FakeShareApi()
        api.read_responses.append(response)
        assert await _client(api, vault, pipeline_config, clock).fetch_latest() is None

    @pytest.mark.asyncio
    async def test_out_of_range_date_entry_skipped(self, vault, pipeline_config, clock) -> None:
        bad = share_entry(TEST_NOW, 999)
        bad["ST"] = bad["WT"] = "Date(99999999999999999)"
        api = FakeShareApi([bad, *_recent_entries(2)])

        readings = await _client(api, vault, pipeline_config, clock).fetch_window(
            TimeWindow.last(timedelta(hours=1), now=TEST_NOW)
        )

        assert [r.value for r in readings] == [121, 120]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [b"\xff\xfe\xfa garbage", b"<html>maintenance</html>"],
        ids=["not-utf8", "not-json"],
    )
    async def test_undecodable_body_raises_unexpected_response(self, body, vault, pipeline_config, clock) -> None:
        api = FakeShareApi()
        api.read_responses.append(httpx.Response(200, content=body))
        with pytest.raises(UnexpectedResponse):
            await _client(api, vault, pipeline_config, clock).fetch_latest()

    @pytest.mark.asyncio
    async def test_undecodable_login_body_raises_unexpected_response(self, vault, pipeline_config, clock) -> None:
        api = FakeShareApi()
        api.login_response = httpx.Response(200, content=b"\xff\xfe\xfa garbage")
        with pytest.raises(UnexpectedResponse):
            await _client(api, vault, pipeline_config, clock).fetch_latest()

    @pytest.mark.asyncio
    async def test_undecodable_login_error_body_is_network_failure(self, vault, pipeline_config, clock) -> None:
        api = FakeShareApi()
        api.login_response = httpx.Response(500, content=b"\xff\xfe\xfa garbage")
        with pytest.raises(NetworkFailure):
            await _client(api, vault, pipeline_config, clock).fetch_latest()

    @pytest.mark.asyncio
    async def test_429_raises_rate_limited(self, vault, pipeline_config, clock) -> None:
        api = FakeShareApi()
        api.read_responses.append(httpx.Response(429))
        with pytest.raises(RateLimited):
            await _client(api, vault, pipeline_config, clock).fetch_latest()

    @pytest.mark.asyncio
    async def test_window_in_future_skips_request(self, vault, pipeline_config, clock) -> None:
        api = FakeShareApi()
        window = TimeWindow(TEST_NOW + timedelta(minutes=1), TEST_NOW + timedelta(minutes=5))
        assert await _client(api, vault, pipeline_config, clock).fetch_window(window) == []
        assert api.requests == []


class TestInformalSession:
    @pytest.mark.asyncio
    async def test_session_reused_between_calls(self, vault, pipeline_config, clock) -> None:
        api = FakeShareApi(_recent_entries())
        client = _client(api, vault, pipeline_config, clock)
        await client.fetch_latest()
        await client.fetch_latest()

        assert len(api.calls(_LOGIN)) == 1
        assert len(api.calls(_READ)) == 2
        stored = SessionCredential.from_bytes(vault.load(InformalSourceClient.SESSION_KEY))
        assert stored.session_id == SESSION_ID
        assert stored.created_at == TEST_NOW

    @pytest.mark.asyncio
    async def test_near_expiry_session_renewed_before_request(self, vault, pipeline_config, clock) -> None:
        """No failed round-trip: the session is replaced proactively."""
        second = "1b2c3d4e-5f60-4718-8293-a4b5c6d7e8f9"
        api = FakeShareApi(_recent_entries())
        api.session_ids = [SESSION_ID, second]
        client = _client(api, vault, pipeline_config, clock)
        await client.fetch_latest()

        clock.advance(hours=23, minutes=55)
        await client.fetch_latest()

        assert len(api.calls(_LOGIN)) == 2
        reads = api.calls(_READ)
        assert [r.url.params["sessionId"] for r in reads] == [SESSION_ID, second]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 500])
    async def test_rejected_session_relogin_and_retry(self, status, vault, pipeline_config, clock) -> None:
        second = "1b2c3d4e-5f60-4718-8293-a4b5c6d7e8f9"
        api = FakeShareApi(_recent_entries())
        api.session_ids = [SESSION_ID, second]
        api.read_responses.append(httpx.Response(status))

        latest = await _client(api, vault, pipeline_config, clock).fetch_latest()

        assert latest is not None
        assert len(api.calls(_LOGIN)) == 2
        assert api.calls(_READ)[1].url.params["sessionId"] == second

    @pytest.mark.asyncio
    async def test_second_401_raises_auth_expired(self, vault, pipeline_config, clock) -> None:
        api = FakeShareApi()
        api.read_responses.extend([httpx.Response(401), httpx.Response(401)])
        with pytest.raises(AuthExpired):
            await _client(api, vault, pipeline_config, clock).fetch_latest()
        assert len(api.calls(_READ)) == 2

    @pytest.mark.asyncio
    async def test_second_500_raises_network_failure(self, vault, pipeline_config, clock) -> None:
        api = FakeShareApi()
        api.read_responses.extend([httpx.Response(500), httpx.Response(500)])
        with pytest.raises(NetworkFailure):
            await _client(api, vault, pipeline_config, clock).fetch_latest()

    @pytest.mark.asyncio
    async def test_null_session_id_is_invalid_credentials(self, vault, pipeline_config, clock) -> None:
        api = FakeShareApi()
        api.session_ids = ["00000000-0000-0000-0000-000000000000"]
        with pytest.raises(InvalidCredentials):
            await _client(api, vault, pipeline_config, clock).fetch_latest()
        assert api.calls(_READ) == []

    @pytest.mark.asyncio
    async def test_password_rejection_code_is_invalid_credentials(self, vault, pipeline_config, clock) -> None:
        api = FakeShareApi()
        api.login_response = httpx.Response(500, json={"Code": "AccountPasswordInvalid", "Message": "bad"})
        with pytest.raises(InvalidCredentials):
            await _client(api, vault, pipeline_config, clock).fetch_latest()

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_login(self, vault, pipeline_config, clock) -> None:
        api = FakeShareApi(_recent_entries())
        api.login_delay = 0.05
        client = _client(api, vault, pipeline_config, clock)

        results = await asyncio.gather(*(client.fetch_latest() for _ in range(8)))

        assert len(api.calls(_AUTH)) == 1
        assert len({r.url.params["sessionId"] for r in api.calls(_READ)}) == 1
        assert all(r is not None for r in results)

    @pytest.mark.asyncio
    async def test_missing_account_raises_not_connected(self, vault, pipeline_config, clock) -> None:
        api = FakeShareApi()
        client = _client(api, vault, pipeline_config, clock)
        client.delete_account()
        with pytest.raises(NotConnected):
            await client.fetch_latest()
        assert api.requests == []

    def test_save_account_discards_session(self, vault, pipeline_config, clock) -> None:
        vault.store(InformalSourceClient.SESSION_KEY, SessionCredential(SESSION_ID, TEST_NOW).to_bytes())
        client = _client(FakeShareApi(), vault, pipeline_config, clock)
        assert vault.load(InformalSourceClient.SESSION_KEY) is None
        assert client.has_account()

    def test_save_account_requires_both_fields(self, vault, pipeline_config, clock) -> None:
        client = _client(FakeShareApi(), vault, pipeline_config, clock)
        with pytest.raises(ValueError):
            client.save_account("", "x")
