"""Login and operation logs: background recording and paged queries."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, Optional, TypeVar

from identsvc.database import LOGIN_LOG_TABLE, OPER_LOG_TABLE, Database
from identsvc.models import (
    ContextUser,
    LoginLog,
    LoginStatus,
    OperLog,
    PageRequest,
    ServiceError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class LogPage(Generic[T]):
    """One page of log entries with the total number of matches."""

    current_page: int = 1
    total: int = 0
    items: list[T] = field(default_factory=list)


def _row_to_login_log(row: Mapping[str, Any]) -> LoginLog:
    return LoginLog(
        id=int(row["id"]),
        org_id=row.get("org_id") or "",
        login_name=row.get("login_name") or "",
        ip=row.get("ip") or "",
        browser=row.get("browser") or "",
        success=row.get("status") == int(LoginStatus.SUCCESS),
        message=row.get("message") or "",
        login_time=row.get("login_time"),
        created_at=row.get("created_at"),
    )


def _row_to_oper_log(row: Mapping[str, Any]) -> OperLog:
    return OperLog(
        id=int(row["id"]),
        org_id=row.get("org_id") or "",
        oper_name=row.get("oper_name") or "",
        oper_url=row.get("oper_url") or "",
        oper_method=row.get("oper_method") or "",
        oper_ip=row.get("oper_ip") or "",
        oper_time=row.get("oper_time"),
        created_at=row.get("created_at"),
    )


class LogService:
    """Writes log entries on a worker pool and reads them back page by page."""

    def __init__(self, db: Database, max_workers: int = 100) -> None:
        self._db = db
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="log")

    def __enter__(self) -> LogService:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def invoke_login_log(self, entry: LoginLog) -> Future:
        """Record a login attempt in the background."""
        return self._pool.submit(self._add_login_log, entry)

    def invoke_oper_log(self, entry: OperLog) -> Future:
        """Record an operation in the background."""
        return self._pool.submit(self._add_oper_log, entry)

    def list_login_logs(
        self,
        org_id: str,
        user_name: str = "",
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        page_num: int = 0,
        page_size: int = 0,
    ) -> LogPage[LoginLog]:
        """Login entries of an organisation, newest login first."""
        rows, total, page = self._page(
            LOGIN_LOG_TABLE.name, "login_name", "login_time",
            org_id, user_name, start_time, end_time, page_num, page_size,
        )
        return LogPage(page.page_num, total, [_row_to_login_log(r) for r in rows])

    def list_oper_logs(
        self,
        org_id: str,
        oper_name: str = "",
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        page_num: int = 0,
        page_size: int = 0,
    ) -> LogPage[OperLog]:
        """Operation entries of an organisation, newest operation first."""
        rows, total, page = self._page(
            OPER_LOG_TABLE.name, "oper_name", "oper_time",
            org_id, oper_name, start_time, end_time, page_num, page_size,
        )
        return LogPage(page.page_num, total, [_row_to_oper_log(r) for r in rows])

    def record_operation(
        self,
        operator: ContextUser,
        path: str,
        method: str,
        ip: str,
        exclude_paths: Iterable[str] = (),
    ) -> Optional[Future]:
        """Log a request made by ``operator`` unless its path is excluded."""
        if path in set(exclude_paths):
            return None
        entry = OperLog(
            org_id=operator.org_id,
            oper_name=operator.name,
            oper_url=path,
            oper_method=method,
            oper_ip=ip,
            oper_time=datetime.now(),
        )
        return self.invoke_oper_log(entry)

    def close(self) -> None:
        """Wait for pending writes and stop the workers."""
        self._pool.shutdown(wait=True)

    # -- helpers ---------------------------------------------------------

    def _add_login_log(self, entry: LoginLog) -> int:
        row = {
            "org_id": entry.org_id,
            "login_name": entry.login_name,
            "ip": entry.ip,
            "browser": entry.browser,
            "message": entry.message,
            "login_time": entry.login_time,
            "created_at": entry.created_at,
            "status": LoginStatus.SUCCESS if entry.success else LoginStatus.FAILED,
        }
        return self._db.insert(LOGIN_LOG_TABLE, row)

    def _add_oper_log(self, entry: OperLog) -> int:
        row = {
            "org_id": entry.org_id,
            "oper_name": entry.oper_name,
            "oper_url": entry.oper_url,
            "oper_method": entry.oper_method,
            "oper_ip": entry.oper_ip,
            "oper_time": entry.oper_time,
            "created_at": entry.created_at,
        }
        try:
            return self._db.insert(OPER_LOG_TABLE, row)
        except Exception:
            logger.exception("failed to record operation log")
            raise

    def _page(
        self,
        table: str,
        name_column: str,
        time_column: str,
        org_id: str,
        name: str,
        start_time: Optional[datetime],
        end_time: Optional[datetime],
        page_num: int,
        page_size: int,
    ) -> tuple[list[dict[str, Any]], int, PageRequest]:
        page = PageRequest(page_num, page_size).normalized()
        conditions = ['"org_id" = ?']
        params: list[Any] = [org_id]
        if name:
            conditions.append(f'"{name_column}" = ?')
            params.append(name)
        if start_time is not None:
            conditions.append(f'"{time_column}" >= ?')
            params.append(start_time)
        if end_time is not None:
            conditions.append(f'"{time_column}" <= ?')
            params.append(end_time)
        where = " AND ".join(conditions)
        try:
            total = int(
                self._db.query(f'SELECT COUNT(*) AS n FROM "{table}" WHERE {where}', params)[0]["n"]
            )
            rows = self._db.query(
                f'SELECT * FROM "{table}" WHERE {where} '
                f'ORDER BY "{time_column}" DESC, "id" DESC LIMIT ? OFFSET ?',
                [*params, page.page_size, page.offset],
            )
        except sqlite3.Error as exc:
            raise ServiceError(f"获取日志失败: {exc}") from exc
        return rows, total, page