"""Fixtures for route tests: a minimal app with auth and settings overridden."""

from __future__ import annotations

import pytest

from fastapi import FastAPI
from fastapi.testclient import TestClient

from tokenchat.api.dependencies import get_app_settings
from tokenchat.api.middleware.auth import get_current_user
from tokenchat.api.middleware.exception_handlers import register_exception_handlers
from tokenchat.api.routes.v1 import router as v1_router
from tokenchat.core.constants import Settings
from tokenchat.models.api_models import UserInfo


@pytest.fixture
def app(settings: Settings, user: UserInfo) -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(v1_router, prefix="/api/v1")

    app.dependency_overrides[get_app_settings] = lambda: settings
    app.dependency_overrides[get_current_user] = lambda: user
    return app


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    return TestClient(app)
