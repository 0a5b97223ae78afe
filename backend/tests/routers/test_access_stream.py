from datetime import datetime, timedelta, timezone
from typing import Iterator

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect
from unitbook.config import get_settings
from unitbook.domain.notifications import AccessBroadcaster, AccessEvent, AccessEventKind
from unitbook.domain.timerange import TimeRange
from unitbook.routers import access

START = datetime(2030, 1, 7, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _clear_settings() -> Iterator[None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _app() -> FastAPI:
    app = FastAPI()
    app.state.access_notifier = AccessBroadcaster()
    app.include_router(access.router)

    @app.post("/emit")
    async def emit(request: Request) -> dict[str, int]:
        interval = TimeRange(START, START + timedelta(minutes=30))
        request.app.state.access_notifier.publish(AccessEvent(AccessEventKind.ADD_ACCESS, "4711", interval))
        return {"subscribers": request.app.state.access_notifier.subscriber_count}

    return app


def test_stream_delivers_access_events() -> None:
    with TestClient(_app()) as client:
        with client.websocket_connect("/ws/access") as ws:
            res = client.post("/emit")
            assert res.json()["subscribers"] == 1
            message = ws.receive_json()
    assert message == {
        "kind": "addAccess",
        "code": "4711",
        "start": int(START.timestamp() * 1000),
        "stop": int((START + timedelta(minutes=30)).timestamp() * 1000),
    }


def test_stream_rejects_wrong_token(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ACCESS_STREAM_TOKEN", "door-secret")
    get_settings.cache_clear()
    with TestClient(_app()) as client:
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws/access?token=nope") as ws:
                ws.receive_json()
