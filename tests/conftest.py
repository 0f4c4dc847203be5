"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

# 测试用脚本目录
FIXTURES_DIR = Path(__file__).parent / "fixtures"


@pytest.fixture
def fixtures_dir() -> Path:
    """测试用脚本目录。"""
    return FIXTURES_DIR


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch: pytest.MonkeyPatch):
    """每个测试使用干净的配置（忽略外部 SUBSPAWN_* 环境变量）。

    同时移除 PYTHONUNBUFFERED：无缓冲的子进程会分多次写出一行，
    下游提前退出时后续写入会收到 EPIPE。
    """
    from subspawn.config import reload_config

    for name in ("SUBSPAWN_ENCODING", "SUBSPAWN_CHUNK_SIZE", "SUBSPAWN_STREAM_LIMIT", "SUBSPAWN_LOG_DEBUG"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("PYTHONUNBUFFERED", raising=False)
    reload_config()
    yield
    monkeypatch.undo()
    reload_config()
