# giftflow/core/security.py
"""
Bearer token 校验（PyJWT）：

- token 由外部 OTP 登录服务签发，本服务只校验签名 / 过期，并解析出调用方身份
- 仅接受配置的 HS* 算法，禁止 alg=none
- 非 dev 环境禁止使用 dev 默认 secret
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import jwt

from giftflow.core.config import AppSettings, get_settings
from giftflow.core.errors import AuthenticationError

ROLE_CUSTOMER = "customer"
ROLE_VENDOR = "vendor"
ROLE_ADMIN = "admin"
ROLE_SYSTEM = "system"

_ROLES = {ROLE_CUSTOMER, ROLE_VENDOR, ROLE_ADMIN, ROLE_SYSTEM}

_DEV_SECRETS = {"", "dev-temp-secret", "dev-secret-change-me"}


@dataclass(frozen=True)
class Actor:
    """发起操作的一方（顾客 / 商家 / 管理员 / 系统任务）。"""

    user_id: str
    role: str = ROLE_CUSTOMER

    @property
    def is_privileged(self) -> bool:
        return self.role in (ROLE_ADMIN, ROLE_SYSTEM)


SYSTEM_ACTOR = Actor(user_id="system", role=ROLE_SYSTEM)


def check_secret(settings: AppSettings) -> None:
    if not settings.is_dev and settings.JWT_SECRET in _DEV_SECRETS:
        raise RuntimeError(
            "JWT_SECRET is not properly configured: non-dev environment "
            f"(ENV={settings.ENV!r}) must not use a development default secret."
        )


def create_access_token(
    user_id: str,
    role: str = ROLE_CUSTOMER,
    *,
    expires_minutes: int = 60,
    settings: Optional[AppSettings] = None,
) -> str:
    s = settings or get_settings()
    payload: Dict[str, Any] = {
        "sub": str(user_id),
        "role": role,
        "exp": int(time.time()) + 60 * expires_minutes,
    }
    return jwt.encode(payload, s.JWT_SECRET, algorithm=s.JWT_ALGORITHM)


def decode_access_token(token: str, *, settings: Optional[AppSettings] = None) -> Actor:
    s = settings or get_settings()
    try:
        claims = jwt.decode(token, s.JWT_SECRET, algorithms=[s.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError("Invalid token") from exc

    sub = str(claims.get("sub") or "").strip()
    if not sub:
        raise AuthenticationError("Token has no subject")
    role = str(claims.get("role") or ROLE_CUSTOMER).lower()
    if role not in _ROLES:
        raise AuthenticationError(f"Unknown role {role!r}")
    return Actor(user_id=sub, role=role)
