"""
Shared fixtures: in-memory SQLite, a fake marketplace behind httpx.MockTransport,
and helpers to seed integrations.
"""
import base64
import os

# Settings are read at import time; pin them before any app module loads.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TOKENS_ENCRYPTION_KEY"] = base64.b64encode(b"k" * 32).decode("ascii")
os.environ["INTERNAL_SERVICE_KEY"] = "test-service-key"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["MARKETPLACE_CLIENT_ID"] = "client-id"
os.environ["MARKETPLACE_CLIENT_SECRET"] = "client-secret"
os.environ["WEBHOOK_SIGNING_SECRET"] = ""
os.environ["LOG_LEVEL"] = "DEBUG"

from datetime import timedelta
from typing import Callable, Dict, Optional, Tuple, Union
from urllib.parse import parse_qs

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base
from app import models  # noqa: F401 - register models with Base
from app.models import MarketplaceIntegration, OrganizationMember
from app.services.datetime_utils import utcnow
from app.services.token_cipher import encrypt_token, load_key

SQLALCHEMY_DATABASE_URL = "sqlite://"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Route = Union[Tuple[int, object], Callable[[httpx.Request], httpx.Response]]


class FakeMarketplace:
    """
    Minimal marketplace: bearer-token checking, an OAuth token endpoint that mints
    access-2, access-3, ..., and per-path canned responses. Unknown paths answer 404.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Route] = {}
        self.requests: list = []
        self.valid_tokens = {"access-1"}
        self.refresh_calls = 0
        self.refresh_forms: list = []
        self.refresh_status = 200
        self.refresh_error = {"error": "invalid_grant", "error_description": "refresh token revoked"}
        self.accept_refreshed = True

    def add(self, method: str, path: str, status: int = 200, json=None, handler=None) -> None:
        self.routes[(method.upper(), path)] = handler if handler else (status, json)

    def calls_to(self, path: str, method: str = "GET") -> list:
        return [r for r in self.requests if r.url.path == path and r.method == method]

    def _token_endpoint(self, request: httpx.Request) -> httpx.Response:
        self.refresh_calls += 1
        form = {k: v[0] for k, v in parse_qs(request.content.decode("utf-8")).items()}
        self.refresh_forms.append(form)
        if self.refresh_status != 200:
            return httpx.Response(self.refresh_status, json=self.refresh_error)
        n = self.refresh_calls + 1
        access = f"access-{n}"
        if self.accept_refreshed:
            self.valid_tokens.add(access)
        return httpx.Response(
            200,
            json={
                "access_token": access,
                "refresh_token": f"refresh-{n}",
                "expires_in": 21600,
                "user_id": 555,
                "token_type": "bearer",
            },
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/oauth/token":
            return self._token_endpoint(request)
        token = request.headers.get("authorization", "")[len("Bearer "):]
        if token not in self.valid_tokens:
            return httpx.Response(401, json={"message": "invalid access token", "status": 401})
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"message": "not_found", "status": 404})
        if callable(route):
            return route(request)
        status, body = route
        return httpx.Response(status, json=body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture(scope="function")
def db_session():
    """Fresh schema per test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def key() -> bytes:
    return load_key()


@pytest.fixture
def fake() -> FakeMarketplace:
    return FakeMarketplace()


@pytest.fixture
def make_integration(db_session, key):
    """Factory for MarketplaceIntegration rows with encrypted tokens."""

    def _make(
        organization_id: str = "org-1",
        seller_id: Optional[str] = "555",
        access_token: str = "access-1",
        refresh_token: Optional[str] = "refresh-1",
        expires_in: timedelta = timedelta(hours=1),
        encrypted: bool = True,
        company_id: Optional[str] = "company-1",
    ) -> MarketplaceIntegration:
        integration = MarketplaceIntegration(
            organization_id=organization_id,
            company_id=company_id,
            marketplace_name="Mercado Livre",
            external_user_id=seller_id,
            access_token=encrypt_token(key, access_token) if encrypted else access_token,
            refresh_token=(encrypt_token(key, refresh_token) if encrypted else refresh_token) if refresh_token else None,
            expires_at=utcnow() + expires_in,
            enabled=True,
        )
        db_session.add(integration)
        db_session.commit()
        db_session.refresh(integration)
        return integration

    return _make


@pytest.fixture
def member(db_session):
    def _add(organization_id: str = "org-1", user_id: str = "user-1") -> OrganizationMember:
        row = OrganizationMember(organization_id=organization_id, user_id=user_id, role="admin")
        db_session.add(row)
        db_session.commit()
        return row

    return _add
