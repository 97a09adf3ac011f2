import sys
import textwrap
from pathlib import Path
from typing import Callable

import pytest

from parish_bridge.bridge.config import BridgeConfig
from parish_bridge.bridge.operations import OPERATIONS
from tests.stubs import ECHO_ARGS


@pytest.fixture
def make_scripts(tmp_path: Path) -> Callable[[str], Path]:
    """Write ``body`` as every operation's script and return the directory."""

    def _make(body: str) -> Path:
        scripts_dir = tmp_path / "scripts"
        scripts_dir.mkdir(exist_ok=True)
        for operation in OPERATIONS.values():
            (scripts_dir / operation.script).write_text(textwrap.dedent(body), encoding="utf-8")
        return scripts_dir

    return _make


@pytest.fixture
def stub_config(make_scripts: Callable[[str], Path]) -> Callable[..., BridgeConfig]:
    def _config(body: str = ECHO_ARGS, max_workers: int = 4) -> BridgeConfig:
        return BridgeConfig(interpreter=sys.executable, scripts_dir=make_scripts(body), max_workers=max_workers)

    return _config
