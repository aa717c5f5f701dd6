"""
danmaku_relay.core.config
~~~~~~~~~~~~~~~~~~~~~~~~~

集中式配置管理，基于 pydantic-settings 自动从 ``.env`` 文件加载。

支持多环境配置（dev / test / prod），加载顺序为:
  1. 环境变量（最高优先级）
  2. ``.env.{ENVIRONMENT}`` 环境专属文件
  3. ``.env`` 基础文件
  4. 字段默认值（最低优先级）

配置缺失或格式错误时 ``Settings()`` 抛出 ``ValidationError``，进程启动失败。
"""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Literal

from croniter import croniter
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_CURRENT_ENV: str = os.getenv("ENVIRONMENT", "dev")


def normalize_cron_expression(expression: str) -> str:
    """把 6 段式（秒在最前）的 cron 表达式转换为 croniter 的秒在最后格式。

    5 段式表达式原样返回。
    """
    fields = expression.split()
    if len(fields) == 6:
        return " ".join(fields[1:] + fields[:1])
    return " ".join(fields)


class Settings(BaseSettings):
    """全局配置对象，字段值按如下优先级加载：环境变量 > .env.{env} > .env > 默认值。"""

    # ── 基础 ──────────────────────────────────────────────────────────
    PROJECT_NAME: str = Field(default="Bilibili Danmaku Source", description="项目名称")
    VERSION: str = Field(default="0.1.0", description="版本号")
    ENVIRONMENT: Literal["dev", "test", "prod"] = Field(
        default="dev",
        description="运行环境：dev / test / prod",
    )

    # ── 订阅端服务 ────────────────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0", description="服务监听地址")
    PORT: int = Field(default=8000, ge=1, le=65535, description="服务监听端口")
    BASIC_AUTH_USERNAME: str | None = Field(default=None, description="订阅者 Basic 认证用户名")
    BASIC_AUTH_PASSWORD: str | None = Field(default=None, description="订阅者 Basic 认证密码")

    # ── 上游直播间 ────────────────────────────────────────────────────
    BILIBILI_PROTOCOL: Literal["ws", "tcp"] = Field(
        default="ws",
        description="上游弹幕连接协议：ws / tcp",
    )
    RECONNECT_CRON: str | None = Field(
        default=None,
        description="定时批量重连的 cron 表达式（5 段，或秒在最前的 6 段），为空则不启用",
    )
    BATCH_RECONNECT_DELAY: float = Field(
        default=10.0, gt=0, description="批量重连时相邻两个房间之间的间隔（秒）",
    )
    CONNECTION_TIMEOUT: float = Field(
        default=10.0, gt=0, description="建立/关闭上游连接的超时时间（秒）",
    )

    # ── 日志 ──────────────────────────────────────────────────────────
    LOGS_DIR: str | None = Field(default=None, description="按天滚动的日志文件目录，为空则只输出到 stdout")
    LOG_LEVEL: str = Field(default="INFO", description="日志级别（可被环境属性覆盖）")

    model_config = SettingsConfigDict(
        env_file=(f".env.{_CURRENT_ENV}", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("RECONNECT_CRON")
    @classmethod
    def _validate_cron(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        fields = value.split()
        if len(fields) not in (5, 6) or not croniter.is_valid(normalize_cron_expression(value)):
            raise ValueError(f"无效的 cron 表达式: {value!r}")
        return value.strip()

    @model_validator(mode="after")
    def _validate_credentials(self) -> Settings:
        if (self.BASIC_AUTH_USERNAME is None) != (self.BASIC_AUTH_PASSWORD is None):
            raise ValueError("BASIC_AUTH_USERNAME 与 BASIC_AUTH_PASSWORD 必须同时配置")
        return self

    # ── 环境判断 ──────────────────────────────────────────────────────

    @property
    def is_prod(self) -> bool:
        """当前是否为生产环境。"""
        return self.ENVIRONMENT == "prod"

    @property
    def is_dev(self) -> bool:
        """当前是否为开发环境。"""
        return self.ENVIRONMENT == "dev"

    @property
    def auth_enabled(self) -> bool:
        """是否开启订阅者认证。用户名和密码都配置时才开启。"""
        return self.BASIC_AUTH_USERNAME is not None and self.BASIC_AUTH_PASSWORD is not None

    @property
    def effective_log_level(self) -> str:
        """根据环境自动推断日志级别。

        - dev  → DEBUG（方便观察房间连接的建立与释放）
        - test → DEBUG（方便排查测试失败）
        - prod → INFO

        如果环境变量中显式设置了 LOG_LEVEL，会覆盖此默认推断。
        """
        env_log = os.getenv("LOG_LEVEL")
        if env_log:
            return env_log
        return {
            "dev": "DEBUG",
            "test": "DEBUG",
            "prod": "INFO",
        }.get(self.ENVIRONMENT, "INFO")


@lru_cache
def get_settings() -> Settings:
    """获取全局 Settings 单例（带缓存，避免重复解析 .env）。"""
    return Settings()
