"""Shared fixtures: a fake Pi Network platform, a throwaway database and the app."""

import json

import httpx
import pytest
import pytest_asyncio

from keybase.database import build_engine, build_sessionmaker, create_tables
from keybase.main import create_app
from keybase.models import User
from keybase.services.pi_network import PiNetworkClient
from keybase.settings import Settings


class FakePiNetwork:
    """In-memory stand-in for the Pi platform API, served through httpx.MockTransport."""

    def __init__(self):
        self.users: dict[str, dict] = {}
        self.expired_tokens: set[str] = set()
        self.unreachable = False
        self.approve_failures: set[str] = set()
        self.cancel_failures: set[str] = set()
        self.completed: dict[str, str] = {}
        self.incomplete: list[dict] = []
        self.calls: list[tuple[str, str]] = []
        self.auth_headers: list[str] = []

    def add_user(self, token: str, uid: str, username: str | None = None, **extra) -> None:
        self.users[token] = {"uid": uid, "username": username, **extra}

    def payment(self, payment_id: str) -> dict:
        return {
            "identifier": payment_id,
            "user_uid": "uid-1",
            "amount": 10,
            "memo": "donation",
            "metadata": {},
            "status": {"developer_approved": True, "cancelled": False},
        }

    def calls_to(self, suffix: str) -> list[tuple[str, str]]:
        return [call for call in self.calls if call[1].endswith(suffix)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)

        path = request.url.path.removeprefix("/v2")
        self.calls.append((request.method, path))
        self.auth_headers.append(request.headers.get("Authorization", ""))

        if path == "/me":
            token = request.headers["Authorization"].removeprefix("Bearer ")
            if token in self.expired_tokens or token not in self.users:
                return httpx.Response(401, json={"error": "token_expired", "error_message": "Token expired"})
            return httpx.Response(200, json=self.users[token])

        if path == "/payments/incomplete_server_payments":
            return httpx.Response(200, json={"incomplete_server_payments": self.incomplete})

        parts = path.strip("/").split("/")
        payment_id = parts[1]
        action = parts[2] if len(parts) > 2 else None

        if action is None:
            if payment_id == "missing":
                return httpx.Response(404, json={"error": "payment_not_found", "error_message": "Payment not found"})
            return httpx.Response(200, json=self.payment(payment_id))
        if action == "approve":
            if payment_id in self.approve_failures:
                return httpx.Response(400, json={"error": "approval_failed", "error_message": "Cannot approve"})
            return httpx.Response(200, json=self.payment(payment_id))
        if action == "complete":
            if payment_id in self.completed:
                return httpx.Response(
                    400, json={"error": "already_completed", "error_message": "Payment already completed"}
                )
            self.completed[payment_id] = json.loads(request.content)["txid"]
            return httpx.Response(200, json=self.payment(payment_id))
        if action == "cancel":
            if payment_id in self.cancel_failures:
                return httpx.Response(400, json={"error": "already_cancelled", "error_message": "Cannot cancel"})
            self.incomplete = [p for p in self.incomplete if p["identifier"] != payment_id]
            return httpx.Response(200, json=self.payment(payment_id))
        return httpx.Response(404, json={"error": "not_found"})


@pytest.fixture
def fake_pi():
    return FakePiNetwork()


@pytest.fixture
def pi_client(fake_pi):
    return PiNetworkClient("test-api-key", transport=httpx.MockTransport(fake_pi.handler))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        pi_api_key="test-api-key",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        secret_key="test-secret",
        log_level="WARNING",
    )


@pytest_asyncio.fixture
async def engine(settings):
    engine = build_engine(settings.database_url)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db(engine):
    async with build_sessionmaker(engine)() as session:
        yield session


@pytest.fixture
def app(settings, pi_client, engine):
    return create_app(settings, pi_client=pi_client, engine=engine)


@pytest_asyncio.fixture
async def api(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
def make_user(db):
    async def _make_user(external_id: str, display_name: str | None = None, role: str = "reader", auth_token: str | None = "tok"):
        user = User(external_id=external_id, display_name=display_name, role=role, auth_token=auth_token)
        db.add(user)
        await db.commit()
        await db.refresh(user)
        return user

    return _make_user
