import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment defaults must be in place before any adminguard import builds settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("TOKEN_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("SEED_ADMIN_SUBJECTS", "admin-0000001")
os.environ.setdefault("SEED_USER_SUBJECTS", "user-0000001")
os.environ.setdefault("LOG_LEVEL", "WARNING")
# In-process counters keep rate-limit tests deterministic
os.environ.pop("REDIS_URL", None)
os.environ.pop("AUDIT_LOG_PATH", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from adminguard.service.runtime import reset_runtime_for_tests  # noqa: E402

ADMIN_SUBJECT = "admin-0000001"
USER_SUBJECT = "user-0000001"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def issue_token():
    """Mint a token accepted by the current runtime's signed provider."""
    from adminguard.service.runtime import get_runtime

    def _issue(subject: str, ttl_minutes: int = 60) -> str:
        return get_runtime().provider.issue_token(subject, ttl_minutes=ttl_minutes)

    return _issue


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
