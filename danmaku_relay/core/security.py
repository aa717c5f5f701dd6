"""
danmaku_relay.core.security
~~~~~~~~~~~~~~~~~~~~~~~~~~~

订阅者 HTTP Basic 认证。

WebSocket 握手阶段读取 ``Authorization`` 请求头，REST 接口使用
FastAPI 的 ``HTTPBasic`` 依赖。未配置凭据时所有请求放行。
"""
from __future__ import annotations

import base64
import binascii
import secrets

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from danmaku_relay.core.config import Settings

_basic = HTTPBasic(auto_error=False)


def check_credentials(settings: Settings, username: str, password: str) -> bool:
    """常量时间比较用户名和密码。"""
    if not settings.auth_enabled:
        return True
    user_ok = secrets.compare_digest(username.encode(), settings.BASIC_AUTH_USERNAME.encode())
    pass_ok = secrets.compare_digest(password.encode(), settings.BASIC_AUTH_PASSWORD.encode())
    return user_ok and pass_ok


def parse_basic_authorization(header: str | None) -> tuple[str, str] | None:
    """解析 ``Basic base64(user:pass)`` 请求头，格式不合法时返回 None。"""
    if not header:
        return None
    scheme, _, encoded = header.partition(" ")
    if scheme.lower() != "basic" or not encoded:
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, sep, password = decoded.partition(":")
    if not sep:
        return None
    return username, password


def is_authorized_header(settings: Settings, header: str | None) -> bool:
    """WebSocket 握手使用：校验 ``Authorization`` 请求头。"""
    if not settings.auth_enabled:
        return True
    credentials = parse_basic_authorization(header)
    if credentials is None:
        return False
    return check_credentials(settings, *credentials)


def require_basic_auth(
    request: Request,
    credentials: HTTPBasicCredentials | None = Depends(_basic),
) -> None:
    """REST 接口依赖：认证开启时要求合法的 Basic 凭据。"""
    settings: Settings = request.app.state.settings
    if not settings.auth_enabled:
        return
    if credentials is None or not check_credentials(
        settings, credentials.username, credentials.password,
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="认证失败",
            headers={"WWW-Authenticate": "Basic"},
        )
