from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from nixlru.common.settings import NixCacheSettings

from tests.utils.upstream import ORIGIN_A, ORIGIN_B, FakeUpstream


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., NixCacheSettings]:
    def _make(**overrides) -> NixCacheSettings:
        values = {
            "state_dir": tmp_path / "state",
            "upstreams": [ORIGIN_A, ORIGIN_B],
            "fetch_timeout_seconds": 5.0,
            "log_level": "WARNING",
        }
        values.update(overrides)
        return NixCacheSettings(**values)

    return _make
