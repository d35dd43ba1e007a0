"""
Pytest configuration for the MFS test suite.

    python -m pytest                 # everything
    python -m pytest -n 8            # parallel (pytest-xdist)
    python -m pytest -m "not slow"   # skip full-size 64 MiB image tests

Geometry can be overridden through MFS_* environment variables; the
tests pin their own geometry, so those variables are cleared for every
test.
"""

import pytest

from fsconfig import _ENV_VARS


def pytest_configure(config):
    config.addinivalue_line("markers",
        "slow: tests that build a full reference-size image (64 MiB)")


@pytest.fixture(autouse=True)
def _clean_mfs_env(monkeypatch):
    for var in _ENV_VARS.values():
        monkeypatch.delenv(var, raising=False)
