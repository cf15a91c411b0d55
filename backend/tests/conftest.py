from __future__ import annotations

import json
import sys
from dataclasses import dataclass, field
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from ai.schemas import AIAnalysisResponse  # noqa: E402
from ai.vision_analyzer import get_vision_analyzer  # noqa: E402
from auth.tokens import TokenService, get_token_service  # noqa: E402
from config import Settings, settings  # noqa: E402
from db.database import Base, get_db  # noqa: E402
from main import app  # noqa: E402
from services.blob_service import InMemoryBlobStorage, get_blob_storage  # noqa: E402
from services.email_service import EmailService, get_email_service  # noqa: E402
from services.rate_limit_service import reset_rate_limits  # noqa: E402
from services.stripe_service import WebhookSignatureError, get_stripe_service  # noqa: E402

TEST_JWT_SECRET = "test-signing-secret-" + "x" * 32
TEST_PASSWORD = "Protein!Lens2024"

DEFAULT_ANALYSIS = {
    "foods": [
        {"name": "Grilled Salmon Fillet", "portion": "200g", "protein": 40, "carbs": 0, "fat": 13},
        {"name": "Quinoa", "portion": "1 cup", "protein": 8, "carbs": 39, "fat": 3.5},
    ],
    "totalProtein": 48,
    "totalCarbs": 39,
    "totalFat": 16.5,
    "confidence": "high",
    "notes": "Balanced plate",
}


class FakeAnalyzer:
    model_name = "fake-vision"

    def __init__(self, payload: dict | None = None):
        self.calls: list[str] = []
        self.payload = payload or DEFAULT_ANALYSIS
        self.error: Exception | None = None

    async def analyze_meal_image(self, image_url: str, request_id: str) -> AIAnalysisResponse:
        self.calls.append(image_url)
        if self.error is not None:
            raise self.error
        return AIAnalysisResponse.model_validate(self.payload)

    async def check_health(self) -> dict:
        return {"status": "healthy", "http_status": 200, "latency_ms": 1}


class FakeStripe:
    enabled = True

    def __init__(self):
        self.customers: list[str] = []
        self.subscriptions: dict[str, dict] = {}

    def create_customer(self, *, email: str, user_id: int) -> str:
        customer_id = f"cus_test_{user_id}"
        self.customers.append(customer_id)
        return customer_id

    def create_checkout_session(self, *, customer_id: str, price_id: str, user_id: int) -> dict:
        return {"session_id": f"cs_test_{user_id}", "url": f"https://checkout.test/{price_id}"}

    def create_portal_session(self, customer_id: str) -> dict:
        return {"url": f"https://portal.test/{customer_id}"}

    def retrieve_subscription(self, subscription_id: str) -> dict:
        return self.subscriptions[subscription_id]

    def construct_event(self, payload: bytes, signature: str) -> dict:
        if signature != "valid-signature":
            raise WebhookSignatureError("signature mismatch")
        return json.loads(payload)


@dataclass
class AppHarness:
    client: TestClient
    session_factory: sessionmaker
    tokens: TokenService
    storage: InMemoryBlobStorage
    analyzer: FakeAnalyzer
    email: EmailService
    stripe: FakeStripe
    users: dict = field(default_factory=dict)

    def signup_and_signin(self, email: str, password: str = TEST_PASSWORD) -> dict:
        signup = self.client.post("/api/auth/signup", json={"email": email, "password": password, "first_name": "Test"})
        assert signup.status_code == 201, signup.text
        token = signup.json()["verification_token"]
        verify = self.client.post("/api/auth/verify-email", json={"token": token})
        assert verify.status_code == 200, verify.text
        signin = self.client.post("/api/auth/signin", json={"email": email, "password": password})
        assert signin.status_code == 200, signin.text
        body = signin.json()
        self.users[email] = body
        return body

    @staticmethod
    def auth(body: dict) -> dict:
        return {"Authorization": f"Bearer {body['access_token']}"}


@pytest.fixture
def harness(monkeypatch):
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    tokens = TokenService(Settings(JWT_SECRET=TEST_JWT_SECRET))
    storage = InMemoryBlobStorage()
    analyzer = FakeAnalyzer()
    email = EmailService(
        host=None,
        port=587,
        user=None,
        password=None,
        from_email="noreply@proteinlens.test",
        from_name="ProteinLens",
        frontend_url="https://app.proteinlens.test",
    )
    stripe = FakeStripe()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_token_service] = lambda: tokens
    app.dependency_overrides[get_blob_storage] = lambda: storage
    app.dependency_overrides[get_vision_analyzer] = lambda: analyzer
    app.dependency_overrides[get_email_service] = lambda: email
    app.dependency_overrides[get_stripe_service] = lambda: stripe

    monkeypatch.setattr(settings, "ENVIRONMENT", "test")
    monkeypatch.setattr(settings, "PASSWORD_BREACH_CHECK_ENABLED", False)
    monkeypatch.setattr(settings, "STRIPE_PRICE_MONTHLY", "price_monthly_test")
    monkeypatch.setattr(settings, "STRIPE_PRICE_ANNUAL", "price_annual_test")
    reset_rate_limits()

    client = TestClient(app, raise_server_exceptions=False)
    try:
        yield AppHarness(
            client=client,
            session_factory=TestingSession,
            tokens=tokens,
            storage=storage,
            analyzer=analyzer,
            email=email,
            stripe=stripe,
        )
    finally:
        app.dependency_overrides.clear()
        reset_rate_limits()
        engine.dispose()
