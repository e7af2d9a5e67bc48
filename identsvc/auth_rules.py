"""Menu and button rules: storage, trees and per-user access filtering."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional

from identsvc.database import AUTH_RULE_TABLE, Database, DuplicateEntryError
from identsvc.models import (
    AuthRule,
    AuthRuleMeta,
    AuthRuleNode,
    AuthRuleType,
    ServiceError,
)
from identsvc.policy import PolicyStore, role_ids_for_user

_TEXT_META = (
    "title",
    "icon",
    "active_icon",
    "authority",
    "badge",
    "badge_type",
    "badge_variants",
    "active_path",
    "iframe_src",
    "link",
    "query",
)
_INT_META = ("affix_tab_order", "max_num_of_open_tab", "order")
_FLAG_META = (
    "keep_alive",
    "hide_in_menu",
    "hide_in_tab",
    "hide_in_breadcrumb",
    "hide_children_in_menu",
    "full_path_key",
    "affix_tab",
    "ignore_access",
    "menu_visible_with_forbidden",
    "open_in_new_window",
    "no_basic_layout",
)


@dataclass
class RuleRequest:
    """Data for adding a rule, or for updating the rule with ``id``."""

    name: str
    pid: int = 0
    type: AuthRuleType = AuthRuleType.DIRECTORY
    path: str = ""
    component: str = ""
    meta: AuthRuleMeta = field(default_factory=AuthRuleMeta)
    id: int = 0


def _row_to_rule(row: Mapping[str, Any]) -> AuthRule:
    meta_values: dict[str, Any] = {}
    for name in _TEXT_META:
        meta_values[name] = row.get(name) or ""
    for name in _INT_META:
        meta_values[name] = int(row.get(name) or 0)
    for name in _FLAG_META:
        meta_values[name] = row.get(name) == 1
    return AuthRule(
        id=int(row["id"]),
        pid=int(row.get("pid") or 0),
        name=row.get("name") or "",
        type=AuthRuleType(int(row.get("type") or 0)),
        path=row.get("path") or "",
        component=row.get("component") or "",
        meta=AuthRuleMeta(**meta_values),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def _request_to_row(request: RuleRequest) -> dict[str, Any]:
    row: dict[str, Any] = {
        "pid": request.pid,
        "name": request.name,
        "type": int(request.type),
        "path": request.path,
        "component": request.component,
    }
    meta = request.meta
    for name in (*_TEXT_META, *_INT_META):
        row[name] = getattr(meta, name)
    for name in _FLAG_META:
        row[name] = 1 if getattr(meta, name) else 0
    return row


def _build_tree(root_id: int, rules: Sequence[AuthRule], seen: frozenset[int]) -> Optional[AuthRuleNode]:
    root = next((rule for rule in rules if rule.id == root_id), None)
    if root is None:
        return None
    path = seen | {root_id}
    node = AuthRuleNode(rule=root)
    for rule in rules:
        if rule.pid == root_id and rule.id not in path:
            child = _build_tree(rule.id, rules, path)
            if child is not None:
                node.children.append(child)
    return node


def build_tree(root_id: int, rules: Sequence[AuthRule]) -> Optional[AuthRuleNode]:
    """Build the subtree rooted at ``root_id``; ``None`` if the root is absent."""
    return _build_tree(root_id, rules, frozenset())


def find_children(rules: Sequence[AuthRule], pid: int) -> list[AuthRule]:
    """All descendants of ``pid``, depth first, each child before its own children."""
    found: list[AuthRule] = []

    def walk(parent: int, path: frozenset[int]) -> None:
        for rule in rules:
            if rule.pid == parent and rule.id not in path:
                found.append(rule)
                walk(rule.id, path | {rule.id})

    walk(pid, frozenset({pid}))
    return found


def _forest(rules: Iterable[AuthRule]) -> list[AuthRuleNode]:
    selected = list(rules)
    trees = (build_tree(rule.id, selected) for rule in selected if rule.pid == 0)
    return [tree for tree in trees if tree is not None]


class AuthRuleService:
    """Manages rules and answers which rules a user may reach."""

    def __init__(self, db: Database, store: PolicyStore, super_admin_id: Optional[str] = None) -> None:
        self._db = db
        self._store = store
        self._super_admin_id = super_admin_id

    # -- basic operations ------------------------------------------------

    def add(self, request: RuleRequest) -> int:
        """Insert a rule and return its id."""
        row = _request_to_row(request)
        try:
            with self._db.transaction():
                return self._db.insert(AUTH_RULE_TABLE, row)
        except DuplicateEntryError as exc:
            raise ServiceError("菜单规则已经存在") from exc
        except (sqlite3.Error, ValueError) as exc:
            raise ServiceError(f"添加菜单失败: {exc}") from exc

    def delete_by_ids(self, ids: Sequence[int]) -> None:
        """Delete the rules, all their descendants, and the policies granting them."""
        rules = self._all_rules()
        targets = list(ids)
        for rule_id in ids:
            targets.extend(child.id for child in find_children(rules, rule_id))
        targets = list(dict.fromkeys(targets))
        self._db.delete(AUTH_RULE_TABLE, {"id": targets})
        for rule_id in targets:
            self._store.remove_filtered_named_policy("p", 1, str(rule_id))

    def update(self, request: RuleRequest) -> None:
        """Overwrite the stored fields of rule ``request.id``."""
        row = _request_to_row(request)
        try:
            with self._db.transaction():
                self._db.update(AUTH_RULE_TABLE, row, {"id": request.id})
        except (ServiceError, sqlite3.Error, ValueError) as exc:
            raise ServiceError(f"更新菜单失败: {exc}") from exc

    # -- login views -----------------------------------------------------

    def get_menu_tree_by_user_id(self, user_id: str) -> list[AuthRuleNode]:
        """Menu trees (without buttons) the user may see."""
        return self._tree_for_user(user_id, include_buttons=False)

    def get_button_list_by_user_id(self, user_id: str) -> list[AuthRule]:
        if self._is_super_admin(user_id):
            return [rule for rule in self._all_rules() if rule.type == AuthRuleType.BUTTON]
        allowed = set(self._rule_ids_for_roles(role_ids_for_user(self._store, user_id)))
        return [
            rule
            for rule in self._all_rules()
            if rule.id in allowed and rule.type == AuthRuleType.BUTTON
        ]

    # -- permission management -------------------------------------------

    def get_full_auth_rule_tree(self, user_id: str) -> list[AuthRuleNode]:
        """Rule trees including buttons that the user may see."""
        return self._tree_for_user(user_id, include_buttons=True)

    def filter_rule_ids_by_user_id(self, rule_ids: Sequence[int], user_id: str) -> list[int]:
        """Keep only the rule ids the user holds, in the given order."""
        if self._is_super_admin(user_id):
            return list(rule_ids)
        allowed = set(self._rule_ids_for_user(user_id))
        return [rule_id for rule_id in rule_ids if rule_id in allowed]

    def has_permission(self, user_id: str, rule_id: int) -> bool:
        if self._is_super_admin(user_id):
            return True
        return rule_id in self._rule_ids_for_user(user_id)

    # -- helpers ---------------------------------------------------------

    def _is_super_admin(self, user_id: str) -> bool:
        return self._super_admin_id is not None and user_id == self._super_admin_id

    def _all_rules(self) -> list[AuthRule]:
        rows = self._db.query(f'SELECT * FROM "{AUTH_RULE_TABLE.name}" ORDER BY "id"')
        return [_row_to_rule(row) for row in rows]

    def _rule_ids_for_roles(self, role_ids: Iterable[int]) -> list[int]:
        found: list[int] = []
        for role_id in role_ids:
            for policy in self._store.get_filtered_named_policy("p", 0, str(role_id)):
                try:
                    found.append(int(policy[1]))
                except (IndexError, ValueError):
                    found.append(0)
        return list(dict.fromkeys(found))

    def _rule_ids_for_user(self, user_id: str) -> list[int]:
        return self._rule_ids_for_roles(role_ids_for_user(self._store, user_id))

    def _tree_for_user(self, user_id: str, include_buttons: bool) -> list[AuthRuleNode]:
        rules = self._all_rules()
        if not self._is_super_admin(user_id):
            allowed = set(self._rule_ids_for_user(user_id))
            rules = [rule for rule in rules if rule.id in allowed]
        if not include_buttons:
            rules = [rule for rule in rules if rule.type != AuthRuleType.BUTTON]
        return _forest(rules)