"""Organisations: creation, editing, status and hierarchy."""

from __future__ import annotations

import sqlite3
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from identsvc.database import ORG_TABLE, USER_TABLE, Database
from identsvc.models import Org, OrgStatus, ServiceError


@dataclass
class OrgInfo:
    """An organisation as presented to clients."""

    id: str = ""
    pid: str = ""
    name: str = ""
    manager_id: str = ""
    manager_name: str = ""
    enabled: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class OrgTreeNode:
    """An organisation together with its child organisations."""

    info: OrgInfo
    children: list[OrgTreeNode] = field(default_factory=list)


def _status(value: Any) -> OrgStatus:
    try:
        return OrgStatus(int(value or 0))
    except ValueError:
        return OrgStatus.DISABLED


def _row_to_org(row: Mapping[str, Any]) -> Org:
    return Org(
        id=row.get("id") or "",
        pid=row.get("pid") or "",
        name=row.get("name") or "",
        manager_id=row.get("manager_id") or "",
        manager_name=row.get("manager_name") or "",
        status=_status(row.get("status")),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def _org_to_info(org: Org) -> OrgInfo:
    return OrgInfo(
        id=org.id,
        pid=org.pid,
        name=org.name,
        manager_id=org.manager_id,
        manager_name=org.manager_name,
        enabled=org.status == OrgStatus.ENABLED,
        created_at=org.created_at,
        updated_at=org.updated_at,
    )


class OrgService:
    """Manages organisations stored in the database."""

    def __init__(self, db: Database, default_org_id: Optional[str] = None) -> None:
        self._db = db
        self._default_org_id = default_org_id

    def add(self, org: Org) -> str:
        """Create an enabled organisation and return its new id."""
        org_id = str(uuid.uuid4())
        row = {
            "id": org_id,
            "pid": org.pid,
            "name": org.name,
            "manager_id": org.manager_id,
            "manager_name": org.manager_name,
            "status": OrgStatus.ENABLED,
        }
        try:
            self._db.insert(ORG_TABLE, row)
        except (ServiceError, sqlite3.Error, ValueError) as exc:
            raise ServiceError(f"添加组织失败: {exc}") from exc
        return org_id

    def delete(self, org_id: str) -> None:
        """Delete an organisation and the users that belong to it."""
        if self._default_org_id is not None and org_id == self._default_org_id:
            raise ServiceError("默认组织不能删除")
        with self._db.transaction():
            try:
                self._db.delete(ORG_TABLE, {"id": org_id})
            except (sqlite3.Error, ValueError) as exc:
                raise ServiceError(f"删除组织失败: {exc}") from exc
            try:
                self._db.delete(USER_TABLE, {"org_id": org_id})
            except (sqlite3.Error, ValueError) as exc:
                raise ServiceError(f"删除用户失败: {exc}") from exc

    def edit_basic_info(self, org: Org) -> None:
        data = {
            "name": org.name,
            "manager_id": org.manager_id,
            "manager_name": org.manager_name,
        }
        try:
            self._db.update(ORG_TABLE, data, {"id": org.id})
        except (sqlite3.Error, ValueError) as exc:
            raise ServiceError(f"修改组织基本信息失败: {exc}") from exc

    def edit_status(self, org_id: str, enabled: bool) -> None:
        status = OrgStatus.ENABLED if enabled else OrgStatus.DISABLED
        try:
            self._db.update(ORG_TABLE, {"status": status}, {"id": org_id})
        except (sqlite3.Error, ValueError) as exc:
            raise ServiceError(f"修改组织状态失败: {exc}") from exc

    def get(self, org_id: str) -> OrgInfo:
        row = self._find(org_id)
        if row is None:
            raise ServiceError(f"获取组织详情失败: 组织不存在: {org_id}")
        return _org_to_info(_row_to_org(row))

    def get_tree(self, org_id: str) -> OrgTreeNode:
        """The organisation with all its descendants."""
        return self._tree(org_id, frozenset())

    def list_trees(self) -> list[OrgTreeNode]:
        """Trees of every root organisation (one without a parent)."""
        roots = self._children_ids("")
        return [self.get_tree(root_id) for root_id in roots]

    def assert_exists(self, org_id: str) -> bool:
        """Return True when the organisation exists; raise otherwise."""
        try:
            rows = self._db.query(
                f'SELECT 1 FROM "{ORG_TABLE.name}" WHERE "id" = ? LIMIT 1', [org_id]
            )
        except sqlite3.Error as exc:
            raise ServiceError(f"检查组织是否存在失败: {exc}") from exc
        if not rows:
            raise ServiceError(f"组织不存在: {org_id}")
        return True

    def _find(self, org_id: str) -> Optional[dict[str, Any]]:
        rows = self._db.query(
            f'SELECT * FROM "{ORG_TABLE.name}" WHERE "id" = ? LIMIT 1', [org_id]
        )
        return rows[0] if rows else None

    def _children_ids(self, pid: str) -> list[str]:
        try:
            rows = self._db.query(
                f'SELECT "id" FROM "{ORG_TABLE.name}" WHERE "pid" = ? ORDER BY "created_at", "id"',
                [pid],
            )
        except sqlite3.Error as exc:
            raise ServiceError(f"获取组织子节点失败: {exc}") from exc
        return [row["id"] for row in rows]

    def _tree(self, org_id: str, seen: frozenset[str]) -> OrgTreeNode:
        row = self._find(org_id)
        if row is None:
            raise ServiceError(f"获取组织失败: 组织不存在: {org_id}")
        node = OrgTreeNode(info=_org_to_info(_row_to_org(row)))
        path = seen | {org_id}
        for child_id in self._children_ids(org_id):
            if child_id not in path:
                node.children.append(self._tree(child_id, path))
        return node