import sys
from pathlib import Path

import pytest

# Ensure the repo root is on sys.path so tests can import the local `collabhub` package.
ROOT = str(Path(__file__).resolve().parents[1])
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)


@pytest.fixture(autouse=True)
def _fast_retries(monkeypatch: pytest.MonkeyPatch) -> None:
    # Unit tests never want real backoff sleeps.
    monkeypatch.setenv("SANDBOX_RETRY_BASE_DELAY_S", "0")
    monkeypatch.setenv("SANDBOX_RETRY_MAX_DELAY_S", "0")
    monkeypatch.setenv("SANDBOX_PROVISION_MAX_ATTEMPTS", "3")
    monkeypatch.delenv("AUTH_MODE", raising=False)
    monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
