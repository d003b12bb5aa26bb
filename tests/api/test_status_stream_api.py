"""End-to-end test for the live status stream.

The SSE response never finishes on its own, and both TestClient and httpx's
ASGITransport buffer the whole body, so the stream request is driven through
the ASGI callable directly while the webhook goes through an httpx client.
"""

import asyncio
import hashlib
import json

import httpx
import pytest

from payhub.core.config import get_settings
from payhub.db.models import PaymentRequest

pytestmark = pytest.mark.integration

PAGBANK_TOKEN = "pagbank-test-token"


class StreamConnection:
    """One open GET on the stream endpoint, with frames collected as they are sent."""

    def __init__(self, app, path: str, query: str):
        self.frames: asyncio.Queue[str] = asyncio.Queue()
        self.status: int | None = None
        self.headers: dict[str, str] = {}
        self._request_sent = False
        self._disconnected = asyncio.Event()
        scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "path": path,
            "raw_path": path.encode(),
            "root_path": "",
            "query_string": query.encode(),
            "headers": [(b"host", b"testserver"), (b"accept", b"text/event-stream")],
            "client": ("testclient", 50000),
            "server": ("testserver", 80),
        }
        self.task = asyncio.ensure_future(app(scope, self._receive, self._send))

    async def _receive(self) -> dict:
        if not self._request_sent:
            self._request_sent = True
            return {"type": "http.request", "body": b"", "more_body": False}
        await self._disconnected.wait()
        return {"type": "http.disconnect"}

    async def _send(self, message: dict) -> None:
        if message["type"] == "http.response.start":
            self.status = message["status"]
            self.headers = {k.decode().lower(): v.decode() for k, v in message["headers"]}
        elif message["type"] == "http.response.body" and message.get("body"):
            await self.frames.put(message["body"].decode())

    async def next_frame(self, timeout: float = 10.0) -> str:
        return await asyncio.wait_for(self.frames.get(), timeout)

    async def close(self) -> None:
        self._disconnected.set()
        await asyncio.wait_for(self.task, 10.0)


def _data(frame: str) -> dict:
    assert frame.startswith("data: ")
    return json.loads(frame[len("data: ") :])


@pytest.fixture
async def app(api_env):
    api_env.setenv("STREAM_KEEPALIVE_SECONDS", "0.5")
    get_settings.cache_clear()

    from payhub.main import create_app

    application = create_app()
    async with application.router.lifespan_context(application):
        yield application


async def test_stream_pushes_snapshot_then_one_status_change(app):
    async with app.state.session_factory() as session:
        session.add(PaymentRequest(request_id=42, status="CREATED", product_type="birth_chart"))
        await session.commit()

    stream = StreamConnection(app, "/pagbank/stream", "request_id=42")
    try:
        snapshot = _data(await stream.next_frame())
        assert stream.status == 200
        assert stream.headers["content-type"].startswith("text/event-stream")
        assert stream.headers["cache-control"] == "no-cache"
        assert snapshot["type"] == "snapshot"
        assert snapshot["request_id"] == 42
        assert snapshot["status"] == "CREATED"
        assert app.state.distributor.subscriber_count(42) == 1

        body = json.dumps(
            {
                "event_id": "evt-stream-1",
                "charge": {
                    "id": "CHAR_STREAM_1",
                    "reference_id": "42",
                    "status": "PAID",
                    "amount": {"value": 3590, "currency": "BRL"},
                },
            }
        ).encode()
        signature = hashlib.sha256(PAGBANK_TOKEN.encode() + b"-" + body).hexdigest()
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as client:
            response = await client.post(
                "/webhook/pagbank",
                content=body,
                headers={"Content-Type": "application/json", "x-authenticity-token": signature},
            )
        assert response.status_code == 200

        changes = []
        while True:
            frame = await stream.next_frame()
            if frame.startswith(":"):
                if changes:
                    break
                continue
            changes.append(_data(frame))

        assert len(changes) == 1
        assert changes[0]["type"] == "payments:status-changed"
        assert changes[0]["request_id"] == 42
        assert changes[0]["provider"] == "pagbank"
        assert changes[0]["status"] == "PAID"
        assert changes[0]["amount"] == 3590
        assert changes[0]["product_type"] == "birth_chart"
    finally:
        await stream.close()

    assert app.state.distributor.subscriber_count(42) == 0
