import json
from typing import Callable, List

import httpx
import pytest

from gerrit_review_mcp.config import Credentials
from gerrit_review_mcp.gateway import RestGateway


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it served."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.requests: List[httpx.Request] = []

        def record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(record)


def gerrit_json(payload, status_code=200) -> httpx.Response:
    return httpx.Response(status_code, text=")]}'\n" + json.dumps(payload))


@pytest.fixture
def credentials():
    return Credentials(base_url="https://review.example.com", username="alice", password="s3cret")


@pytest.fixture
def make_gateway(credentials):
    def factory(handler, creds=None):
        transport = RecordingTransport(handler)
        return RestGateway(creds or credentials, transport=transport), transport
    return factory
