import pathlib
import sys

import pytest
from pydantic import SecretStr

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from chatrelay.config import Settings  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def make_settings(**overrides) -> Settings:
    """Build settings without touching the environment's API keys."""

    values = {
        "siliconflow_api_key": SecretStr("test-key"),
        "base_url": "https://upstream.example.com/v1",
    }
    values.update(overrides)
    return Settings(**values)  # pyright: ignore[reportCallIssue]


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(
        job_store_path=tmp_path / "jobs.json",
        chat_db=tmp_path / "chat.db",
        BOCHA_API_KEY="search-key",
    )
