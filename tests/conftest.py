"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 用内存中的假连接替代真实的 Bilibili 上游连接，
使单元测试可在无网络环境下快速运行。
"""
from __future__ import annotations

import os

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")

from tests.fakes import FakeFactory  # noqa: E402


@pytest.fixture()
def fake_factory() -> FakeFactory:
    return FakeFactory()
