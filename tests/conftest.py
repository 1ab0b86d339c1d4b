import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="gatekeep_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("PERSIST_MEMORY_STORE", "false")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gatekeep.config import Settings, reset_settings_cache  # noqa: E402
from gatekeep.service.auth import AuthService  # noqa: E402
from gatekeep.service.directory import StoreDirectory  # noqa: E402
from gatekeep.service.notifier import LogNotifier  # noqa: E402
from gatekeep.service.otp import OtpEngine  # noqa: E402
from gatekeep.service.passwords import PasswordService  # noqa: E402
from gatekeep.service.sessions import SessionManager  # noqa: E402
from gatekeep.storage.memory import MemoryDocumentStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=_test_tmp_dir,
        use_memory_store=True,
        persist_memory_store=False,
        test_mode=True,
    )


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def directory(store, settings):
    return StoreDirectory(store, settings)


@pytest.fixture
def notifier():
    return LogNotifier()


@pytest.fixture
def otp_engine(store, directory, settings, notifier):
    return OtpEngine(store, directory, settings, notifier=notifier)


@pytest.fixture
def session_manager(store, directory, settings):
    return SessionManager(store, directory, settings)


@pytest.fixture
def passwords(store):
    return PasswordService(store)


@pytest.fixture
def auth_service(directory, otp_engine, session_manager, passwords, settings):
    return AuthService(directory, otp_engine, session_manager, passwords, settings)


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
