from pathlib import Path
from typing import Optional

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from seo_agent.config import AgentConfig, AppSettings, GeminiBackendConfig, OllamaBackendConfig, OpenAIBackendConfig
from seo_agent.main import create_app
from seo_agent.tools import ToolRegistry
from tests.fakes import FakeBackend, make_registry


def make_settings(tmp_path: Optional[Path] = None, **overrides) -> AppSettings:
    agent = overrides.pop("agent", None) or AgentConfig(max_steps=5, step_timeout_s=5.0, tool_timeout_s=2.0)
    settings = AppSettings(
        default_model="llama3.1",
        host="127.0.0.1",
        port=8000,
        ollama=OllamaBackendConfig(base_url="http://ollama.test"),
        openai=OpenAIBackendConfig(base_url="http://openai.test/v1", api_key="sk-test"),
        gemini=GeminiBackendConfig(base_url="http://gemini.test/v1beta", api_key="gm-test"),
        agent=agent,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def settings(tmp_path: Path) -> AppSettings:
    return make_settings(tmp_path)


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        backend: Optional[FakeBackend] = None,
        registry: Optional[ToolRegistry] = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        fake = backend or FakeBackend()
        requested = []

        def backend_factory(app_settings: AppSettings, model_id: str) -> FakeBackend:
            requested.append(model_id)
            return fake

        app = create_app(
            settings,
            registry=registry if registry is not None else make_registry(),
            backend_factory=backend_factory,
        )
        return app, fake, requested

    return _factory


@pytest.fixture
async def client(app_factory):
    app, backend, requested = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_backend = backend  # type: ignore[attr-defined]
            http_client.requested = requested  # type: ignore[attr-defined]
            yield http_client
