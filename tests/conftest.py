"""Shared fixtures for worker tests."""

import os
from pathlib import Path

import pytest

from httpworker import WorkerOptions

ROOT = Path(__file__).resolve().parents[1]
FIXTURES = Path(__file__).resolve().parent / "fixtures"


@pytest.fixture
def fixtures_dir() -> Path:
    return FIXTURES


@pytest.fixture
def make_options():
    """Build WorkerOptions whose guest can import this checkout."""

    def _make(**kwargs) -> WorkerOptions:
        python_path = [str(ROOT)]
        if os.environ.get("PYTHONPATH"):
            python_path.append(os.environ["PYTHONPATH"])
        env = {"PYTHONPATH": os.pathsep.join(python_path)}
        env.update(kwargs.pop("env", {}))
        return WorkerOptions(env=env, **kwargs)

    return _make
