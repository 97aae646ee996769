import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="hrsecurity_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("MFA_ENCRYPTION_KEY", "test-mfa-key-for-testing-only-do-not-use-in-production")
# Blank REDIS_URL selects the in-process session store
os.environ.setdefault("REDIS_URL", "")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST_KIB", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from hrsecurity.service.context import ClientContext  # noqa: E402
from hrsecurity.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

TENANT = "acme"
PASSWORD = "Correct-Horse7"
CHROME_ON_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def client_context():
    return ClientContext(ip_address="10.0.0.5", user_agent=CHROME_ON_WINDOWS, tenant_hint=TENANT)


@pytest.fixture
def make_account(runtime):
    """Factory creating accounts straight in the store with a real argon2 hash."""

    def _make(email="jane@acme.test", *, role="employee", tenant_id=TENANT, password=PASSWORD):
        return runtime.store.create_account(
            tenant_id,
            email,
            runtime.passwords.hash(password),
            role=role,
            full_name=email.split("@")[0].title(),
        )

    return _make


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
