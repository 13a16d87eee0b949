"""
Tests for the appliance control API client against a mock AdGuard Home server.
"""

import asyncio

import aiohttp
import pytest
import pytest_asyncio
from aiohttp.test_utils import unused_port

from dns_filter_manager.appliance_client import (
    ApplianceClient,
    generate_request_id,
    normalize_host,
    sanitize_headers,
)
from dns_filter_manager.exceptions import (
    DecryptionFailed,
    HTTPError,
    MalformedResponse,
    NetworkError,
    TimedOut,
)
from dns_filter_manager.models import ApplianceRecord
from dns_filter_manager.request_gate import InFlightRequests, RateLimiter, RequestGate


@pytest.fixture
def gate():
    return RequestGate(
        RateLimiter(capacity=100, window=1.0),
        InFlightRequests(),
        timeout=2.0,
        max_retries=1,
        retry_base_delay=0.0,
    )


@pytest_asyncio.fixture
async def client(gate):
    client = ApplianceClient(gate)
    yield client
    await client.close()


@pytest.fixture
def server(mock_server):
    return ApplianceRecord(
        id="srv-1",
        name="Home",
        host=mock_server.url + "/",
        username="admin",
        password="secret",
    )


class TestHelpers:

    def test_normalize_host(self):
        assert normalize_host("https://10.0.0.1/") == "https://10.0.0.1"
        assert normalize_host("https://10.0.0.1") == "https://10.0.0.1"

    def test_sanitize_headers(self):
        headers = {"Authorization": "Basic abc", "X-Request-ID": "req_1"}
        sanitized = sanitize_headers(headers)

        assert sanitized["Authorization"] == "[REDACTED]"
        assert sanitized["X-Request-ID"] == "req_1"
        assert headers["Authorization"] == "Basic abc"
        assert sanitize_headers(None) == {}

    def test_request_id_format(self):
        request_id = generate_request_id()
        assert request_id.startswith("req_")
        assert request_id != generate_request_id()


class TestFiltering:

    @pytest.mark.asyncio
    async def test_get_filtering_status(self, client, server, mock_server):
        status = await client.get_filtering_status(server)

        assert status.enabled is True
        assert status.interval == 24
        assert status.user_rules == ["||ads.example^", "@@||cdn.example^"]
        assert status.filters[0].name == "List A"
        assert status.whitelist_filters == []

    @pytest.mark.asyncio
    async def test_request_carries_auth_and_tracing_headers(self, client, server, mock_server):
        await client.get_filtering_status(server)

        headers = mock_server.requests[0]['headers']
        assert headers['Authorization'] == mock_server.expected_auth
        assert headers['X-Request-ID'].startswith('req_')
        assert 'X-Request-Timestamp' in headers

    @pytest.mark.asyncio
    async def test_set_rules_then_get_user_rules(self, client, server, mock_server):
        await client.set_rules(server, ["||tracker.example^", "@@||safe.example^"])

        assert mock_server.calls('/control/filtering/set_rules')[0]['body'] == {
            'rules': ["||tracker.example^", "@@||safe.example^"]
        }
        assert await client.get_user_rules(server) == ["||tracker.example^", "@@||safe.example^"]

    @pytest.mark.asyncio
    async def test_add_rules_read_merge_write(self, client, server, mock_server):
        merged = await client.add_rules(server, ["||new.example^"])

        assert merged == ["||ads.example^", "@@||cdn.example^", "||new.example^"]
        assert mock_server.user_rules == merged

    @pytest.mark.asyncio
    async def test_remove_rules_read_filter_write(self, client, server, mock_server):
        remaining = await client.remove_rules(server, ["||ads.example^"])

        assert remaining == ["@@||cdn.example^"]
        assert mock_server.user_rules == remaining

    @pytest.mark.asyncio
    async def test_filter_urls(self, client, server, mock_server):
        await client.add_filter_url(server, "https://lists.example/b.txt", "List B")
        assert mock_server.calls('/control/filtering/add_url')[0]['body'] == {
            'url': "https://lists.example/b.txt", 'name': "List B", 'whitelist': False,
        }

        await client.remove_filter_url(server, "https://lists.example/b.txt")
        assert mock_server.filters == []

    @pytest.mark.asyncio
    async def test_set_filtering_config(self, client, server, mock_server):
        await client.set_filtering_config(server, enabled=False, interval=12)
        assert mock_server.calls('/control/filtering/config')[0]['body'] == {
            'enabled': False, 'interval': 12,
        }

    @pytest.mark.asyncio
    async def test_refresh_filters(self, client, server, mock_server):
        assert await client.refresh_filters(server) == {"updated": 2}
        assert mock_server.calls('/control/filtering/refresh')[0]['body'] == {'whitelist': False}

    @pytest.mark.asyncio
    async def test_check_host(self, client, server, mock_server):
        blocked = await client.check_host(server, "ads.example")
        assert blocked.blocked is True
        assert blocked.rule == "||ads.example^"
        assert mock_server.calls('/control/filtering/check_host')[0]['query'] == {'name': 'ads.example'}

        allowed = await client.check_host(server, "fine.example")
        assert allowed.blocked is False


class TestStatus:

    @pytest.mark.asyncio
    async def test_server_info(self, client, server, mock_server):
        info = await client.get_server_info(server)

        assert info.version == "v0.107.43"
        assert info.protection_enabled is True
        assert info.dns_addresses == ["192.168.1.2"]

    @pytest.mark.asyncio
    async def test_protection_toggle(self, client, server, mock_server):
        await client.set_protection_enabled(server, False)

        assert mock_server.protection_enabled is False
        assert await client.get_protection_status(server) is False

    @pytest.mark.asyncio
    async def test_protection_status_missing_field(self, client, server, mock_server):
        mock_server.status_payload = {'version': 'v0.107.43'}

        with pytest.raises(MalformedResponse):
            await client.get_protection_status(server)

    @pytest.mark.asyncio
    async def test_non_object_response_rejected(self, client, server, mock_server):
        mock_server.status_payload = ["not", "an", "object"]

        with pytest.raises(MalformedResponse):
            await client.get_server_info(server)

    @pytest.mark.asyncio
    async def test_query_log_and_stats(self, client, server, mock_server):
        log = await client.get_query_log(server, limit=10, search="ads")
        assert len(log.data) == 1
        assert mock_server.calls('/control/querylog')[0]['query'] == {
            'limit': '10', 'offset': '0', 'search': 'ads',
        }

        stats = await client.get_stats(server)
        assert stats.num_dns_queries == 1000
        assert stats.dns_queries == [1, 2, 3]
        assert stats.top_clients == []


class TestErrors:

    @pytest.mark.asyncio
    async def test_wrong_credentials(self, client, server, mock_server):
        bad = server.model_copy(update={"password": "wrong"})

        with pytest.raises(HTTPError) as exc_info:
            await client.get_filtering_status(bad)

        assert exc_info.value.status == 401
        assert exc_info.value.retryable is False
        assert str(exc_info.value) == "HTTP 401: Unauthorized"

    @pytest.mark.asyncio
    async def test_server_error_retried_then_surfaced(self, client, server, mock_server):
        mock_server.fail_status = 500

        with pytest.raises(HTTPError) as exc_info:
            await client.get_filtering_status(server)

        assert exc_info.value.status == 500
        assert len(mock_server.calls('/control/filtering/status')) == 2

    @pytest.mark.asyncio
    async def test_unreachable(self, client):
        offline = ApplianceRecord(
            id="srv-x", host=f"http://127.0.0.1:{unused_port()}",
            username="admin", password="secret",
        )

        with pytest.raises(NetworkError):
            await client.get_filtering_status(offline)

    @pytest.mark.asyncio
    async def test_transport_read_timeout(self, gate, server, mock_server):
        mock_server.delay = 0.5
        session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(sock_read=0.05))
        client = ApplianceClient(gate, session=session)

        try:
            with pytest.raises(TimedOut):
                await client.get_filtering_status(server)
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_missing_password_fails_before_network(self, client, server, mock_server):
        locked = server.model_copy(update={"password": None})

        with pytest.raises(DecryptionFailed):
            await client.get_filtering_status(locked)
        assert mock_server.requests == []


class TestDeduplication:

    @pytest.mark.asyncio
    async def test_concurrent_reads_share_one_request(self, client, server, mock_server):
        mock_server.delay = 0.05

        results = await asyncio.gather(
            client.get_filtering_status(server),
            client.get_filtering_status(server),
        )

        assert results[0] == results[1]
        assert len(mock_server.calls('/control/filtering/status')) == 1

    @pytest.mark.asyncio
    async def test_concurrent_writes_not_collapsed(self, client, server, mock_server):
        mock_server.delay = 0.05

        await asyncio.gather(
            client.set_rules(server, ["||a.example^"]),
            client.set_rules(server, ["||a.example^"]),
        )

        assert len(mock_server.calls('/control/filtering/set_rules')) == 2


class TestConnection:

    @pytest.mark.asyncio
    async def test_success(self, client, mock_server):
        result = await client.test_connection(mock_server.url, "admin", "secret")
        assert result == {"success": True}

    @pytest.mark.asyncio
    async def test_failure_single_attempt(self, client, mock_server):
        result = await client.test_connection(mock_server.url, "admin", "wrong")

        assert result["success"] is False
        assert result["error"] == "Authentication failed. Check your credentials."
        assert len(mock_server.calls('/control/filtering/status')) == 1
