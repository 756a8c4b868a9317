from __future__ import annotations

from datetime import datetime, timezone

from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from keygate.apps.api.deps import get_backend
from keygate.apps.api.main import create_app
from keygate.domain.models import POLICY_STATE_ID, PolicyState
from keygate.persistence.db import SessionLocal
from keygate.services.key_policy.config_store import get_policy_config
from keygate.services.key_policy.schedule import latest_reactivation_boundary
from keygate.tests.utils.backend import FakeKeyBackend


def build_app(backend: FakeKeyBackend) -> FastAPI:
    app = create_app()
    app.dependency_overrides[get_backend] = lambda: backend
    return app


def api_client(app: FastAPI, cookies: dict[str, str] | None = None) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test", cookies=cookies)


async def mark_current_window_swept() -> None:
    # Record the live window as done so requests only exercise the evaluator.
    async with SessionLocal() as session:
        config = await get_policy_config(session)
        state = await session.get(PolicyState, POLICY_STATE_ID)
        state.last_sweep_at = latest_reactivation_boundary(
            datetime.now(timezone.utc), config.daily_reactivate_hour, config.daily_reactivate_minute
        )
        await session.commit()
