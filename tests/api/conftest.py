"""
Fixtures for the API tests.

Module-level route state is reset around every test and the static datasets
and log source are replaced by in-memory fakes.
"""
import pytest
from fastapi.testclient import TestClient

from src.api import routes
from src.config import settings
from src.main import app
from src.services.log_source import LogSource
from tests.conftest import _usage


class FakeLogSource(LogSource):
    def __init__(self, usage: dict):
        self.usage = usage

    def get_identifier(self) -> str:
        return "fake-log-source"

    async def query_usage(self, principal_id, start_time, end_time):
        return self.usage.get(principal_id)


@pytest.fixture
def fake_log_source() -> FakeLogSource:
    """sp-1 reads users; everyone else is silent."""
    return FakeLogSource({"sp-1": [_usage("GET", "users", 12)]})


@pytest.fixture
def client(mocker, static_datasets, fake_log_source):
    routes.reset_state()
    mocker.patch("src.api.routes.get_static_datasets", return_value=static_datasets)
    mocker.patch("src.api.routes.get_log_source", return_value=fake_log_source)
    # We force the LLM to be a mock so we don't hit AWS Bedrock
    mocker.patch.object(settings, "use_mock_llm", True)
    mocker.patch("src.services.advisor._advisor_service", None)
    yield TestClient(app)
    routes.reset_state()
