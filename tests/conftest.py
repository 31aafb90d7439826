"""
Shared pytest configuration.

Ensures the project root is on sys.path so that `import dragonchat` works
in all tests, and points the settings at throwaway backends before the
package is imported.
"""

import os
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.pop("KEYCLOAK_URL", None)
os.environ.pop("KEYCLOAK_REALM", None)

from dragonchat.provider.key_pool import reset_key_pool  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_keys():
    reset_key_pool()
    yield
    reset_key_pool()
