import pathlib
import sys
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tenderflow.config import Settings
from tenderflow.engine import Engine
from tenderflow.main import create_app
from tenderflow.models import Actor, Role
from tenderflow.notifications import LoggingNotifier

JWT_SECRET = "jwt_test_secret"


def issue_token(*, user_id: int, role: str, secret: str = JWT_SECRET, ttl_minutes: int = 30) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def future(hours: int = 24) -> datetime:
    return datetime.now(timezone.utc) + timedelta(hours=hours)


def past(hours: int = 1) -> datetime:
    return datetime.now(timezone.utc) - timedelta(hours=hours)


@pytest.fixture
def settings(tmp_path: pathlib.Path) -> Settings:
    return Settings.from_env(
        {
            "TENDERFLOW_DB_BACKEND": "sqlite",
            "TENDERFLOW_SQLITE_PATH": str(tmp_path / "tenderflow.sqlite3"),
            "DB_RECONNECT_DELAY_MS": "0",
            "DB_LOCK_WAIT_MS": "5000",
        }
    )


@pytest.fixture
def notifier() -> LoggingNotifier:
    return LoggingNotifier()


@pytest.fixture
def engine(settings: Settings, notifier: LoggingNotifier):
    eng = Engine.build(settings, notifier=notifier).start()
    yield eng
    eng.shutdown()


@pytest.fixture
def admin() -> Actor:
    return Actor(user_id=1, role=Role.ADMIN)


@pytest.fixture
def buyer() -> Actor:
    return Actor(user_id=10, role=Role.BUYER)


@pytest.fixture
def other_buyer() -> Actor:
    return Actor(user_id=11, role=Role.BUYER)


@pytest.fixture
def vendor_a() -> Actor:
    return Actor(user_id=100, role=Role.VENDOR)


@pytest.fixture
def vendor_b() -> Actor:
    return Actor(user_id=101, role=Role.VENDOR)


@pytest.fixture
def vendor_c() -> Actor:
    return Actor(user_id=102, role=Role.VENDOR)


@pytest.fixture
def open_tender(engine: Engine, buyer: Actor):
    return engine.tender_service.create_tender(
        buyer,
        {
            "title": "Office network upgrade",
            "description": "Switches, cabling and installation",
            "budget_min": "50",
            "budget_max": "500",
            "deadline": future(),
            "status": "open",
        },
    )


@pytest.fixture
def api_client(engine: Engine, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("JWT_SHARED_SECRET", JWT_SECRET)
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "sub,exp,role")
    return TestClient(create_app(engine))


def auth_headers(actor: Actor) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(user_id=actor.user_id, role=actor.role.value)}"}
