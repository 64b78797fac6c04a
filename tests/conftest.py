import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric import ec

# Ensure `src` is on sys.path for tests when not installed editable.
SRC = Path(__file__).resolve().parent.parent / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from cloudkit_web.database import DatabaseClient  # noqa: E402
from cloudkit_web.signing import RequestSigner  # noqa: E402
from cloudkit_web.transport import CloudKitTransport  # noqa: E402

FIXED_NOW = datetime(2024, 2, 25, 10, 0, 0, tzinfo=timezone.utc)
HOST = "https://ck.test"
CONTAINER = "iCloud.com.example.app"


def server_record(
    name: str,
    record_type: str = "Person",
    fields: Optional[Dict[str, Any]] = None,
    *,
    tag: str = "tag-1",
    created: int = 1_700_000_000_000,
) -> Dict[str, Any]:
    """A record entry as the service returns it."""
    return {
        "recordName": name,
        "recordType": record_type,
        "recordChangeTag": tag,
        "fields": fields or {},
        "created": {"timestamp": created},
        "modified": {"timestamp": created},
    }


class FakeService:
    """Routes requests by path suffix and records everything it receives."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.routes: Dict[str, Callable[[httpx.Request], httpx.Response]] = {}

    def route(self, suffix: str, responder: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[suffix] = responder

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for suffix, responder in self.routes.items():
            if request.url.path.endswith(suffix) or str(request.url).startswith(suffix):
                return responder(request)
        return httpx.Response(404, text="no route")

    def to(self, suffix: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(suffix) or str(r.url).startswith(suffix)]

    @staticmethod
    def body(request: httpx.Request) -> Dict[str, Any]:
        return json.loads(request.content)


def json_response(payload: Any, status: int = 200) -> httpx.Response:
    return httpx.Response(status, json=payload)


@pytest.fixture
def ec_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture
def fake_service() -> FakeService:
    return FakeService()


@pytest.fixture
def make_db(fake_service):
    """Build a `DatabaseClient` talking to `fake_service` through httpx.MockTransport."""

    def _make(private_key=None, **kwargs) -> DatabaseClient:
        client = httpx.AsyncClient(transport=httpx.MockTransport(fake_service.handler))
        signer = RequestSigner("key-id-1", private_key, clock=lambda: FIXED_NOW)
        transport = CloudKitTransport(signer, host=HOST, client=client)
        return DatabaseClient(transport, CONTAINER, **kwargs)

    return _make
