from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator

import pytest
from fastapi import Depends, FastAPI, HTTPException
from fastapi.testclient import TestClient
from sqlalchemy.exc import ProgrammingError
from unitbook.config import Settings, get_settings
from unitbook.deps import get_current_user, get_session, require_capability
from unitbook.domain.capabilities import Capability, UserContext
from unitbook.domain.offers import OfferSigner
from unitbook.domain.timerange import TimeRange
from unitbook.models import User
from unitbook.utils.auth import create_access_token


def _user(**flags: bool) -> User:
    return User(id=123, name="ada", email="ada@example.org", phone_e164="+15550100", code="4711", **flags)


class DummySession:
    def __init__(self, user: User | None | Exception) -> None:
        self.user = user
        self.rollbacks = 0

    async def __aenter__(self) -> "DummySession":  # pragma: no cover
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> bool:  # pragma: no cover
        return False

    async def scalar(self, *args: Any, **kwargs: Any) -> User | None:
        if isinstance(self.user, Exception):
            raise self.user
        return self.user

    async def rollback(self) -> None:
        self.rollbacks += 1


@pytest.fixture(autouse=True)
def _set_auth_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTH_SECRET", "testsecret")
    get_settings.cache_clear()


def _token(**kwargs: Any) -> str:
    settings = Settings(auth_secret="testsecret")
    return create_access_token(user_id=123, secret=settings.auth_secret, algorithm=settings.auth_algorithm, **kwargs)


@pytest.mark.asyncio
async def test_valid_token_resolves_user_context() -> None:
    session = DummySession(_user(approved=True, trained=True))
    ctx = await get_current_user(authorization=f"Bearer {_token()}", session=session)  # type: ignore[arg-type]
    assert ctx.user_id == 123
    assert ctx.code == "4711"
    assert ctx.can(Capability.BOOK)
    assert session.rollbacks == 1


@pytest.mark.asyncio
async def test_user_lookup_ends_its_read_transaction_on_failure() -> None:
    session = DummySession(None)
    with pytest.raises(HTTPException):
        await get_current_user(authorization=f"Bearer {_token()}", session=session)  # type: ignore[arg-type]
    assert session.rollbacks == 1


@pytest.mark.asyncio
async def test_missing_header_is_401() -> None:
    with pytest.raises(HTTPException) as excinfo:
        await get_current_user(authorization=None, session=DummySession(_user()))  # type: ignore[arg-type]
    assert excinfo.value.status_code == 401


@pytest.mark.asyncio
async def test_expired_token_is_401() -> None:
    token = _token(expires_delta=timedelta(seconds=-1))
    with pytest.raises(HTTPException) as excinfo:
        await get_current_user(authorization=f"Bearer {token}", session=DummySession(_user()))  # type: ignore[arg-type]
    assert excinfo.value.status_code == 401


@pytest.mark.asyncio
async def test_offer_token_is_not_a_session() -> None:
    start = datetime(2030, 1, 7, 9, 0, tzinfo=timezone.utc)
    offer = OfferSigner("testsecret").sign(TimeRange(start, start + timedelta(minutes=30)), 1, 0)
    with pytest.raises(HTTPException) as excinfo:
        await get_current_user(  # type: ignore[arg-type]
            authorization=f"Bearer {offer.signature}", session=DummySession(_user())
        )
    assert excinfo.value.status_code == 401


@pytest.mark.asyncio
async def test_unknown_user_is_401() -> None:
    with pytest.raises(HTTPException) as excinfo:
        await get_current_user(authorization=f"Bearer {_token()}", session=DummySession(None))  # type: ignore[arg-type]
    assert excinfo.value.status_code == 401


@pytest.mark.asyncio
async def test_missing_users_table_is_500() -> None:
    session = DummySession(ProgrammingError("missing", None, Exception("cause")))
    with pytest.raises(HTTPException) as excinfo:
        await get_current_user(authorization=f"Bearer {_token()}", session=session)  # type: ignore[arg-type]
    assert excinfo.value.status_code == 500


def _make_app(user: User) -> TestClient:
    app = FastAPI()

    async def override_get_session() -> AsyncIterator[DummySession]:
        yield DummySession(user)

    app.dependency_overrides[get_session] = override_get_session

    @app.get("/book")
    async def book(ctx: UserContext = Depends(require_capability(Capability.BOOK))) -> dict[str, int]:
        return {"user_id": ctx.user_id}

    return TestClient(app)


def test_capability_granted_for_trained_member() -> None:
    client = _make_app(_user(approved=True, trained=True))
    res = client.get("/book", headers={"Authorization": f"Bearer {_token()}"})
    assert res.status_code == 200
    assert res.json() == {"user_id": 123}


def test_capability_missing_is_403() -> None:
    client = _make_app(_user(approved=True, trained=False))
    res = client.get("/book", headers={"Authorization": f"Bearer {_token()}"})
    assert res.status_code == 403


def test_bearer_scheme_required() -> None:
    client = _make_app(_user(approved=True, trained=True))
    res = client.get("/book", headers={"Authorization": f"Token {_token()}"})
    assert res.status_code == 401
    assert res.headers.get("www-authenticate", "").lower().startswith("bearer")
