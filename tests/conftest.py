"""
Shared fixtures for dns-filter-manager tests.
"""

import asyncio
import base64
import os
import sys
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import unused_port

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from dns_filter_manager.credential_store import CredentialStore
from dns_filter_manager.crypto import CredentialCodec
from dns_filter_manager.kv_store import InMemoryKeyValueStore
from dns_filter_manager.rule_cache import RuleCache


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def kv():
    return InMemoryKeyValueStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def codec(kv):
    return CredentialCodec(kv, instance_id="test-instance-0001")


@pytest.fixture
def rule_cache(kv, clock):
    return RuleCache(kv, clock=clock)


@pytest.fixture
def credentials(kv, codec, rule_cache, clock):
    return CredentialStore(kv, codec, rule_cache, clock=clock)


class MockAdGuardServer:
    """Mock AdGuard Home control API for testing."""

    def __init__(self, username="admin", password="secret"):
        self.app = web.Application(middlewares=[self.auth_middleware])
        self.runner = None
        self.site = None
        self.port = None

        self.expected_auth = "Basic " + base64.b64encode(
            f"{username}:{password}".encode()
        ).decode()

        # Test data
        self.user_rules = ["||ads.example^", "@@||cdn.example^"]
        self.protection_enabled = True
        self.filters = []
        self.requests = []
        self.fail_status = None
        self.status_payload = None
        self.delay = 0.0

        # Setup routes
        self.app.router.add_get('/control/filtering/status', self.filtering_status)
        self.app.router.add_post('/control/filtering/set_rules', self.set_rules)
        self.app.router.add_post('/control/filtering/add_url', self.add_url)
        self.app.router.add_post('/control/filtering/remove_url', self.remove_url)
        self.app.router.add_post('/control/filtering/config', self.set_config)
        self.app.router.add_post('/control/filtering/refresh', self.refresh)
        self.app.router.add_get('/control/filtering/check_host', self.check_host)
        self.app.router.add_get('/control/status', self.status)
        self.app.router.add_post('/control/protection', self.protection)
        self.app.router.add_get('/control/querylog', self.querylog)
        self.app.router.add_get('/control/stats', self.stats)

    @web.middleware
    async def auth_middleware(self, request, handler):
        body = await request.json() if request.can_read_body else None
        self.requests.append({
            'method': request.method,
            'path': request.path,
            'query': dict(request.query),
            'headers': dict(request.headers),
            'body': body,
        })

        if self.delay:
            await asyncio.sleep(self.delay)
        if request.headers.get('Authorization') != self.expected_auth:
            return web.Response(status=401, text="Unauthorized")
        if self.fail_status:
            return web.Response(status=self.fail_status, text="boom")
        return await handler(request)

    def calls(self, path):
        return [r for r in self.requests if r['path'] == path]

    async def filtering_status(self, request):
        return web.json_response({
            'enabled': True,
            'interval': 24,
            'user_rules': self.user_rules,
            'filters': [
                {'id': 1, 'url': 'https://lists.example/a.txt', 'name': 'List A',
                 'enabled': True, 'rules_count': 100},
            ] + self.filters,
            'whitelist_filters': None,
        })

    async def set_rules(self, request):
        self.user_rules = (await request.json())['rules']
        return web.Response(status=200)

    async def add_url(self, request):
        data = await request.json()
        self.filters.append({'url': data['url'], 'name': data['name'], 'enabled': True})
        return web.Response(status=200, text="OK")

    async def remove_url(self, request):
        data = await request.json()
        self.filters = [f for f in self.filters if f['url'] != data['url']]
        return web.Response(status=200)

    async def set_config(self, request):
        return web.Response(status=200)

    async def refresh(self, request):
        return web.json_response({'updated': 2})

    async def check_host(self, request):
        name = request.query.get('name')
        if name == 'ads.example':
            return web.json_response({
                'reason': 'FilteredBlackList',
                'rules': [{'text': '||ads.example^', 'filter_list_id': 0}],
            })
        return web.json_response({'reason': 'NotFilteredNotFound', 'rules': []})

    async def status(self, request):
        if self.status_payload is not None:
            return web.json_response(self.status_payload)
        return web.json_response({
            'version': 'v0.107.43',
            'running': True,
            'protection_enabled': self.protection_enabled,
            'dns_port': 53,
            'http_port': 80,
            'dns_addresses': ['192.168.1.2'],
        })

    async def protection(self, request):
        self.protection_enabled = (await request.json())['enabled']
        return web.Response(status=200)

    async def querylog(self, request):
        return web.json_response({
            'data': [{'question': {'name': 'ads.example'}, 'reason': 'FilteredBlackList'}],
            'oldest': '2024-01-01T00:00:00Z',
        })

    async def stats(self, request):
        return web.json_response({
            'num_dns_queries': 1000,
            'num_blocked_filtering': 150,
            'avg_processing_time': 0.005,
            'top_blocked_domains': [{'ads.example': 50}],
            'dns_queries': [1, 2, 'x', 3],
        })

    async def start(self):
        """Start mock server."""
        self.port = unused_port()
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, '127.0.0.1', self.port)
        await self.site.start()

    async def stop(self):
        """Stop mock server."""
        if self.runner:
            await self.runner.cleanup()

    @property
    def url(self):
        return f"http://127.0.0.1:{self.port}"


@pytest_asyncio.fixture
async def mock_server():
    """Create and start mock AdGuard Home server."""
    server = MockAdGuardServer()
    await server.start()
    yield server
    await server.stop()
