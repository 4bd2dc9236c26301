from __future__ import annotations

import os
from datetime import datetime, timezone

import pytest


@pytest.fixture(autouse=True)
def _clean_tvm_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("TVM_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2024, 1, 1, 0, 5, tzinfo=timezone.utc)
