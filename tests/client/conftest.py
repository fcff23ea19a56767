"""Fixtures for the player-side client: a scripted tracking API."""

import httpx
import orjson
import pytest


class FakeTrackingApi:
    """Answers the client's requests and records what it received.

    ``events_statuses`` is consumed one status per batch POST; once empty,
    batches get ``events_status``.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.session_status = 201
        self.session_body: dict = {
            "session_token": "tok-1",
            "video_data": {"id": "v1", "title": "Intro", "duration_seconds": 120.0},
        }
        self.events_status = 201
        self.events_statuses: list[int] = []
        self.events_body: dict = {"success": True}
        self.network_down = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.network_down:
            raise httpx.ConnectError("connection refused", request=request)

        path = request.url.path
        if path == "/v1/video/ping":
            return httpx.Response(204)
        if path == "/v1/video/sessions":
            return httpx.Response(self.session_status, json=self.session_body)
        if path.startswith("/v1/video/sessions/") and path.endswith("/end"):
            return httpx.Response(200, json={"success": True})
        if path == "/v1/video/events/batch":
            status = (
                self.events_statuses.pop(0) if self.events_statuses else self.events_status
            )
            return httpx.Response(status, json=self.events_body)
        return httpx.Response(404, json={"error": True, "message": "Not Found"})

    def batches(self) -> list[dict]:
        """Decoded bodies of every event batch POST."""
        return [
            orjson.loads(r.content)
            for r in self.requests
            if r.url.path == "/v1/video/events/batch"
        ]

    def delivered_types(self) -> list[str]:
        return [event["t"] for batch in self.batches() for event in batch["events"]]

    def count(self, method: str, path: str) -> int:
        return sum(1 for r in self.requests if r.method == method and r.url.path == path)


@pytest.fixture
def api() -> FakeTrackingApi:
    return FakeTrackingApi()


@pytest.fixture
def http_client(api) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=httpx.MockTransport(api.handler),
        base_url="http://testserver",
        headers={"Authorization": "Bearer test-token"},
    )
