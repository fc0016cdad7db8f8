import os

import pytest

# Prefixes of environment variables read by the engine
_ENV_PREFIXES_TO_ISOLATE = ("FEATURE_FLAG_", "FLAGEVAL_")
_ENV_VARS_TO_ISOLATE = ["ENVIRONMENT", "APP_ENV"]


def _isolated_keys():
    return [k for k in os.environ if k.startswith(_ENV_PREFIXES_TO_ISOLATE)] + _ENV_VARS_TO_ISOLATE


@pytest.fixture(autouse=True)
def env_isolation():
    """Isolate environment variables between tests."""
    backup = {k: os.environ.get(k) for k in _isolated_keys()}
    try:
        yield
    finally:
        for k in _isolated_keys():
            if k not in backup:
                os.environ.pop(k, None)
        for k, v in backup.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


class FakeClock:
    """Manually advanced clock for TTL and breaker timing."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
