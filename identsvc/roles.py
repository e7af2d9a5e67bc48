"""Roles: creation, editing, rule grants, user assignment and hierarchy."""

from __future__ import annotations

import sqlite3
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from identsvc.auth_rules import AuthRuleService
from identsvc.database import ROLE_TABLE, Database
from identsvc.models import ContextUser, Role, RoleStatus, ServiceError
from identsvc.policy import PolicyStore, role_ids_for_user


@dataclass
class RoleInfo:
    """A role as presented to clients."""

    id: int = 0
    pid: int = 0
    org_id: str = ""
    name: str = ""
    enabled: bool = False
    creator_id: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class RoleNode:
    """A role together with its child roles."""

    info: RoleInfo
    children: list[RoleNode] = field(default_factory=list)


@dataclass
class RoleRequest:
    """Data for adding a role, or for editing the role with ``id``."""

    name: str
    org_id: str = ""
    pid: int = 0
    menu_ids: list[int] = field(default_factory=list)
    id: int = 0


def _status(value: Any) -> RoleStatus:
    try:
        return RoleStatus(int(value or 0))
    except ValueError:
        return RoleStatus.DISABLED


def _row_to_role(row: Mapping[str, Any]) -> Role:
    return Role(
        id=int(row["id"]),
        pid=int(row.get("pid") or 0),
        org_id=row.get("org_id") or "",
        name=row.get("name") or "",
        status=_status(row.get("status")),
        creator_id=row.get("creator_id") or "",
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def _role_to_info(role: Role) -> RoleInfo:
    return RoleInfo(
        id=role.id,
        pid=role.pid,
        org_id=role.org_id,
        name=role.name,
        enabled=role.status == RoleStatus.ENABLED,
        creator_id=role.creator_id,
        created_at=role.created_at,
        updated_at=role.updated_at,
    )


def _to_int(value: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class RoleService:
    """Manages roles and the rules and users bound to them."""

    def __init__(
        self,
        db: Database,
        store: PolicyStore,
        rules: AuthRuleService,
        super_admin_id: Optional[str] = None,
    ) -> None:
        self._db = db
        self._store = store
        self._rules = rules
        self._super_admin_id = super_admin_id

    def add(self, operator: ContextUser, request: RoleRequest) -> int:
        """Create an enabled role granting the menus the operator may grant."""
        menu_ids = self._rules.filter_rule_ids_by_user_id(request.menu_ids, operator.id)
        row = {
            "org_id": request.org_id,
            "pid": request.pid,
            "name": request.name,
            "status": RoleStatus.ENABLED,
            "creator_id": operator.id,
        }
        with self._db.transaction():
            try:
                role_id = self._db.insert(ROLE_TABLE, row)
            except (ServiceError, sqlite3.Error, ValueError) as exc:
                raise ServiceError(f"添加角色失败: {exc}") from exc
            if menu_ids:
                self._add_role_rules(role_id, menu_ids)
        return role_id

    def delete_by_ids(self, operator: ContextUser, role_ids: Sequence[int]) -> None:
        """Delete roles, their rule grants and their user assignments."""
        for role_id in role_ids:
            if not self._has_manage_access(operator, role_id):
                raise ServiceError("没有删除这个角色的权限")
        ids = list(role_ids)
        with self._db.transaction():
            try:
                self._db.delete(ROLE_TABLE, {"id": ids})
            except (sqlite3.Error, ValueError) as exc:
                raise ServiceError(f"删除角色失败: {exc}") from exc
            self._remove_role_rules(ids)
            for role_id in ids:
                self._store.remove_filtered_named_grouping_policy("g", 1, str(role_id))

    def edit(self, operator: ContextUser, request: RoleRequest) -> None:
        """Change a role's parent and name and replace its rule grants."""
        if not self._has_manage_access(operator, request.id):
            raise ServiceError("没有修改这个角色的权限")
        menu_ids = self._rules.filter_rule_ids_by_user_id(request.menu_ids, operator.id)
        with self._db.transaction():
            try:
                self._db.update(
                    ROLE_TABLE, {"pid": request.pid, "name": request.name}, {"id": request.id}
                )
            except (sqlite3.Error, ValueError) as exc:
                raise ServiceError(f"修改角色失败: {exc}") from exc
            self._remove_role_rules([request.id])
            if menu_ids:
                self._add_role_rules(request.id, menu_ids)

    def edit_status(self, role_id: int, enabled: bool) -> None:
        status = RoleStatus.ENABLED if enabled else RoleStatus.DISABLED
        try:
            self._db.update(ROLE_TABLE, {"status": status}, {"id": role_id})
        except (sqlite3.Error, ValueError) as exc:
            raise ServiceError(f"修改角色状态失败: {exc}") from exc

    def get(self, role_id: int) -> Optional[Role]:
        """The role with its granted menu ids, or None if there is none."""
        row = self._find(role_id)
        if row is None:
            return None
        role = _row_to_role(row)
        policies = self._store.get_filtered_named_policy("p", 0, str(role_id))
        role.menu_ids = [_to_int(policy[1]) for policy in policies]
        return role

    def list_by_org_id(self, org_id: str) -> list[Role]:
        ids = self._select_ids('"org_id" = ?', [org_id], "获取角色数据失败")
        roles = (self.get(role_id) for role_id in ids)
        return [role for role in roles if role is not None]

    def get_tree_by_role_id(self, role_id: int) -> Optional[RoleNode]:
        """The role with all its descendant roles, or None if it does not exist."""
        return self._tree(role_id, frozenset())

    def list_trees_by_org_id(self, org_id: str) -> list[RoleNode]:
        """Trees of the organisation's root roles (those without a parent)."""
        ids = self._select_ids(
            '"org_id" = ? AND "pid" = 0', [org_id], "获取组织角色列表失败"
        )
        trees = (self.get_tree_by_role_id(role_id) for role_id in ids)
        return [tree for tree in trees if tree is not None]

    def get_role_ids_by_user_id(self, user_id: str) -> list[int]:
        return role_ids_for_user(self._store, user_id)

    def get_roles_by_user_id(self, user_id: str) -> list[Role]:
        roles = (self.get(role_id) for role_id in self.get_role_ids_by_user_id(user_id))
        return [role for role in roles if role is not None]

    def filter_role_ids(
        self, operator: ContextUser, role_ids: Sequence[int], include_children: bool
    ) -> list[int]:
        """Role ids the operator may assign; currently every given id is kept."""
        return list(role_ids)

    # -- helpers ---------------------------------------------------------

    def _is_super_admin(self, user_id: str) -> bool:
        return self._super_admin_id is not None and user_id == self._super_admin_id

    def _has_manage_access(self, operator: ContextUser, role_id: int) -> bool:
        """Super admins manage all roles; others those they created or hold."""
        if self._is_super_admin(operator.id):
            return True
        for role in self.list_by_org_id(operator.org_id):
            if role.id == role_id and role.creator_id == operator.id:
                return True
        return role_id in self.get_role_ids_by_user_id(operator.id)

    def _find(self, role_id: int) -> Optional[dict[str, Any]]:
        try:
            rows = self._db.query(
                f'SELECT * FROM "{ROLE_TABLE.name}" WHERE "id" = ? LIMIT 1', [role_id]
            )
        except sqlite3.Error as exc:
            raise ServiceError(f"获取角色信息失败: {exc}") from exc
        return rows[0] if rows else None

    def _select_ids(self, condition: str, params: list[Any], failure: str) -> list[int]:
        try:
            rows = self._db.query(
                f'SELECT "id" FROM "{ROLE_TABLE.name}" WHERE {condition} ORDER BY "id"', params
            )
        except sqlite3.Error as exc:
            raise ServiceError(f"{failure}: {exc}") from exc
        return [int(row["id"]) for row in rows]

    def _tree(self, role_id: int, seen: frozenset[int]) -> Optional[RoleNode]:
        row = self._find(role_id)
        if row is None:
            return None
        node = RoleNode(info=_role_to_info(_row_to_role(row)))
        path = seen | {role_id}
        for child_id in self._select_ids('"pid" = ?', [role_id], "获取角色子节点失败"):
            if child_id in path:
                continue
            child = self._tree(child_id, path)
            if child is not None:
                node.children.append(child)
        return node

    def _add_role_rules(self, role_id: int, rule_ids: Sequence[int]) -> None:
        rules = [[str(role_id), str(rule_id), "All"] for rule_id in rule_ids]
        self._store.add_named_policies("p", rules)

    def _remove_role_rules(self, role_ids: Sequence[int]) -> None:
        for role_id in role_ids:
            self._store.remove_filtered_policy(0, str(role_id))