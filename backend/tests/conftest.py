"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend to avoid sandbox restrictions
that can affect the Trio backend, make `backend.*` importable from any working
directory and keep env-driven toggles from leaking across tests.
"""
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _clear_messaging_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure a consistent dev environment and clear toggles per test.

    Why:
        Some tests opt into prod semantics or flip the gateway/group toggles.
        A missing cleanup would leak into unrelated tests in a full run.
    """
    for var in (
        "SCHULHOF_ENV",
        "SCHULHOF_LOAD_DOTENV",
        "MESSAGING_DATABASE_URL",
        "DATABASE_URL",
        "MESSAGING_STATEMENT_TIMEOUT_MS",
        "MESSAGING_REQUEST_DEADLINE_SECONDS",
        "MESSAGING_GROUP_CHANNEL",
        "MESSAGING_TRUST_GATEWAY_HEADER",
    ):
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture(autouse=True)
def _reset_messaging_engine():
    """Reset the route-level engine so `set_engine` overrides never leak."""
    try:
        from backend.web.routes import messaging as routes  # type: ignore
    except Exception:
        yield
        return
    routes.set_engine(None)
    yield
    routes.set_engine(None)
