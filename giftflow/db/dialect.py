# giftflow/db/dialect.py
"""
方言相关的 INSERT ... ON CONFLICT：PG 与 SQLite 语法一致，只是构造器不同。
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def conflict_insert(session: AsyncSession, target: Any):
    name = session.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert(target)
    if name == "sqlite":
        return sqlite.insert(target)
    raise NotImplementedError(f"ON CONFLICT insert is not supported for dialect {name!r}")
