from pathlib import Path

import pytest

from mtgate.config import ENV_API_HASH, ENV_API_ID, ENV_PASSWORD, ENV_STATE_DIR
from tests.fakes import FakeClient, Host, make_host


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (ENV_API_ID, ENV_API_HASH, ENV_PASSWORD, ENV_STATE_DIR):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    path = tmp_path / "state"
    path.mkdir()
    return path


@pytest.fixture
def host(state_dir: Path) -> Host:
    return make_host(state_dir)


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()
