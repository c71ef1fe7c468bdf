import inspect
import json
from collections import defaultdict
from time import time

import httpx
import pytest
import pytest_asyncio

from simsync import create_app
from simsync.domain.accounts import AccountRecord
from simsync.domain.api_client import (
    BALANCE_ENDPOINT,
    CLAIM_ENDPOINT,
    CLAIM_LIST_ENDPOINT,
    DASHBOARD_ENDPOINT,
    POINT_DASHBOARD_ENDPOINT,
    REFRESH_TOKEN_ENDPOINT,
    TRANSFER_ENDPOINT,
    SimApiClient,
)

API_BASE_URL = "https://api.test/mytmapi"
MIRROR_URL = "https://mirror.test"
API_PREFIX = "/mytmapi"


def default_refresh(request):
    return {"data": {"attribute": {"token": "new_token", "access_token_expire_at": int(time()) + 3600}}}


DEFAULT_PAYLOADS = {
    REFRESH_TOKEN_ENDPOINT: default_refresh,
    DASHBOARD_ENDPOINT: {"data": {"attribute": {"startStatusLabel": "Active"}}},
    POINT_DASHBOARD_ENDPOINT: {"data": {"attribute": {"totalPoint": 120}}},
    BALANCE_ENDPOINT: {
        "data": {"attribute": {"mainBalance": {"availableTotalBalance": 1500, "currency": "Ks"}}}
    },
    CLAIM_LIST_ENDPOINT: {"data": {"attribute": [{"enable": False, "id": None, "label": ""}]}},
    CLAIM_ENDPOINT: {"status": "success"},
    TRANSFER_ENDPOINT: {
        "status": "success",
        "data": {"attribute": {"response": {"message": "OTP needed!"}, "requestId": 99}},
    },
}


class FakeSimApi:
    """
    In-memory stand-in for the operator API.

    Responses are looked up per endpoint, optionally per msisdn. A response can
    be a JSON body, an int status, an ``httpx.Response``, an exception to raise
    or a (sync or async) callable taking the request.
    """

    def __init__(self):
        self.requests = []
        self._fixed = {}
        self._queued = defaultdict(list)

    def set(self, endpoint, response, msisdn=None):
        self._fixed[(endpoint, msisdn)] = response

    def queue(self, endpoint, *responses, msisdn=None):
        self._queued[(endpoint, msisdn)].extend(responses)

    def calls(self, endpoint, msisdn=None):
        return [
            r
            for r in self.requests
            if r.url.path == API_PREFIX + endpoint and (msisdn is None or r.url.params.get("msisdn") == msisdn)
        ]

    def _lookup(self, endpoint, msisdn):
        for key in ((endpoint, msisdn), (endpoint, None)):
            if self._queued[key]:
                return self._queued[key].pop(0)
        for key in ((endpoint, msisdn), (endpoint, None)):
            if key in self._fixed:
                return self._fixed[key]
        return DEFAULT_PAYLOADS.get(endpoint, 404)

    async def handle(self, request):
        self.requests.append(request)
        endpoint = request.url.path.removeprefix(API_PREFIX)
        value = self._lookup(endpoint, request.url.params.get("msisdn"))
        if callable(value):
            value = value(request)
            if inspect.isawaitable(value):
                value = await value
        if isinstance(value, Exception):
            raise value
        if isinstance(value, httpx.Response):
            return value
        if isinstance(value, int):
            return httpx.Response(value, json={"message": f"HTTP {value}"})
        return httpx.Response(200, json=value)


class FakeMirror:
    """A Firebase-style JSON tree keyed by path, served over REST."""

    def __init__(self):
        self.tree = {}
        self.raw = {}
        self.requests = []
        self.fail_with = None

    def records(self, namespace):
        prefix = namespace + "/"
        return {key[len(prefix):]: value for key, value in self.tree.items() if key.startswith(prefix)}

    def handle(self, request):
        self.requests.append(request)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"error": "unavailable"})

        path = request.url.path.removesuffix(".json").strip("/")
        if request.method == "GET":
            if path in self.raw:
                return httpx.Response(200, json=self.raw[path])
            if path in self.tree:
                return httpx.Response(200, json=self.tree[path])
            return httpx.Response(200, json=self.records(path) or None)
        if request.method == "PUT":
            body = json.loads(request.content)
            self.tree[path] = body
            return httpx.Response(200, json=body)
        if request.method == "DELETE":
            self.tree.pop(path, None)
            return httpx.Response(200, json=None)
        return httpx.Response(405)


def build_transport(fake_api, fake_mirror):
    async def handler(request):
        if request.url.host == "api.test":
            return await fake_api.handle(request)
        if request.url.host == "mirror.test":
            return fake_mirror.handle(request)
        return httpx.Response(404)

    return httpx.MockTransport(handler)


@pytest.fixture
def fake_api():
    return FakeSimApi()


@pytest.fixture
def fake_mirror():
    return FakeMirror()


@pytest_asyncio.fixture
async def http_client(fake_api, fake_mirror):
    async with httpx.AsyncClient(transport=build_transport(fake_api, fake_mirror)) as client:
        yield client


@pytest.fixture
def api_client(http_client):
    return SimApiClient(http_client, API_BASE_URL, device_name="test-device")


@pytest_asyncio.fixture
async def app(tmp_path, fake_api, fake_mirror):
    test_config = {
        "DATABASE_URI": f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        "API_BASE_URL": API_BASE_URL,
        "MIRROR_URL": MIRROR_URL,
        "MIRROR_AUTH": None,
        "MIRROR_OWNER": "owner",
        "MIRROR_ADMIN_NAMESPACE": None,
        "RETRY_MAX_ATTEMPTS": 3,
        "RETRY_BASE_DELAY": 0,
        "CLAIM_CONCURRENCY": 20,
        "PAGE_SIZE": 10,
        "ACCOUNT_LIMIT": 50,
        "TOKEN_EXPIRY_MARGIN": 300,
    }
    app = await create_app(test_config, transport=build_transport(fake_api, fake_mirror))
    yield app
    await app.close()


@pytest.fixture
def record_factory():
    def make(user_id="1", **fields):
        data = {
            "user_id": str(user_id),
            "msisdn": f"09{int(user_id):08d}",
            "token": "access_token",
            "refresh_token": "refresh_token",
            "access_token_expire_at": int(time()) + 3600,
        }
        data.update(fields)
        return AccountRecord.model_validate(data)

    return make
