import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Configure the environment before anything imports maak.config
_test_tmp_dir = tempfile.mkdtemp(prefix="maak_test_")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("PUBLIC_ANON_KEY", "test-anon-key")
os.environ.setdefault("SESSION_BACKUP_DIR", _test_tmp_dir)
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from maak.service.runtime import reset_runtime_for_tests  # noqa: E402

HOUR_MS = 3_600_000
# Fixed "now" used by tests that need deterministic demo ages
NOW_MS = 1_760_000_000_000


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def now_ms():
    return NOW_MS


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
