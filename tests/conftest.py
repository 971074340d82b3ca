from __future__ import annotations

from pathlib import Path

import pytest

from dcode_package_builder.settings import RuntimeSettings


@pytest.fixture
def settings(tmp_path: Path) -> RuntimeSettings:
    return RuntimeSettings(base_path=str(tmp_path / "builds")).normalized()
