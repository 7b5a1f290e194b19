import json
from typing import Callable, List

import httpx
import pytest
from fastapi.testclient import TestClient

from api.submit import Settings, create_app

TEST_GAS_URL = "https://script.google.com/macros/s/AKfycbx-test-deployment-id/exec"


class FakeUpstream:
    """Stands in for the Apps Script web app and records every call."""

    def __init__(self, responder: Callable[[httpx.Request], httpx.Response]):
        self.responder = responder
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    @property
    def calls(self) -> int:
        return len(self.requests)


@pytest.fixture
def make_client():
    """Build a TestClient around a relay whose upstream is faked."""

    def _make(responder=None, settings=None, **overrides):
        if responder is None:
            responder = lambda request: httpx.Response(200, json={"ok": True})
        if settings is None:
            settings = Settings(gas_webapp_url=TEST_GAS_URL, **overrides)
        upstream = FakeUpstream(responder)
        app = create_app(settings=settings, transport=httpx.MockTransport(upstream))
        return TestClient(app), upstream

    return _make


@pytest.fixture
def json_upstream():
    def _responder(payload):
        return lambda request: httpx.Response(200, text=json.dumps(payload))

    return _responder
