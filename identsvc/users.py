"""Users: creation, self-registration, editing, roles, passwords and listing."""

from __future__ import annotations

import hashlib
import secrets
import sqlite3
import string
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Optional

from identsvc.database import USER_TABLE, Database, DuplicateEntryError
from identsvc.models import (
    ContextUser,
    Org,
    PageRequest,
    ServiceError,
    User,
    UserSex,
    UserStatus,
)
from identsvc.orgs import OrgService
from identsvc.policy import PolicyStore, user_subject
from identsvc.roles import RoleService

DEFAULT_PASSWORD = "password"
REGISTER_ROLE_IDS: tuple[int, ...] = (2,)
SALT_LENGTH = 10

_SALT_ALPHABET = string.ascii_letters + string.digits
_DUPLICATE_USER = "添加用户失败，用户名已存在"


def hash_password(password: str, salt: str) -> str:
    """Hash a password with its salt; the result is a hex digest."""
    return hashlib.sha256(f"{salt}:{password}".encode("utf-8")).hexdigest()


_hash_password = hash_password


def _new_salt() -> str:
    return "".join(secrets.choice(_SALT_ALPHABET) for _ in range(SALT_LENGTH))


@dataclass
class UserCreateRequest:
    """Data for creating a user on behalf of an operator."""

    user_name: str
    password: str
    nick_name: str = ""
    org_id: str = ""
    sex: UserSex = UserSex.UNKNOWN
    email: str = ""
    avatar: str = ""
    mobile: str = ""
    address: str = ""
    describe: str = ""
    is_admin: bool = False
    role_ids: list[int] = field(default_factory=list)


@dataclass
class UserProfileUpdate:
    """The personal details a user may change."""

    id: str
    nickname: str = ""
    email: str = ""
    avatar: str = ""
    mobile: str = ""
    address: str = ""
    describe: str = ""


def _status(value: Any) -> UserStatus:
    try:
        return UserStatus(int(value or 0))
    except ValueError:
        return UserStatus.DISABLED


def _sex(value: Any) -> UserSex:
    try:
        return UserSex(int(value or 0))
    except ValueError:
        return UserSex.UNKNOWN


def _row_to_user(row: Mapping[str, Any]) -> User:
    return User(
        id=row.get("id") or "",
        name=row.get("name") or "",
        nickname=row.get("nickname") or "",
        password=row.get("password") or "",
        salt=row.get("salt") or "",
        status=_status(row.get("status")),
        org_id=row.get("org_id") or "",
        sex=_sex(row.get("sex")),
        email=row.get("email") or "",
        avatar=row.get("avatar") or "",
        mobile=row.get("mobile") or "",
        address=row.get("address") or "",
        describe=row.get("describe") or "",
        is_admin=row.get("is_admin") == 1,
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


class UserService:
    """Manages user accounts and the roles assigned to them."""

    def __init__(
        self,
        db: Database,
        store: PolicyStore,
        orgs: OrgService,
        roles: RoleService,
        super_admin_id: Optional[str] = None,
        default_password: str = DEFAULT_PASSWORD,
        register_role_ids: Sequence[int] = REGISTER_ROLE_IDS,
    ) -> None:
        self._db = db
        self._store = store
        self._orgs = orgs
        self._roles = roles
        self._super_admin_id = super_admin_id
        self._default_password = default_password
        self._register_role_ids = list(register_role_ids)

    def create(self, operator: ContextUser, request: UserCreateRequest) -> str:
        """Create an enabled user; the organisation defaults to the operator's."""
        org_id = request.org_id or operator.org_id
        user_id = str(uuid.uuid4())
        salt = _new_salt()
        row = {
            "id": user_id,
            "name": request.user_name,
            "nickname": request.nick_name,
            "password": _hash_password(request.password, salt),
            "salt": salt,
            "status": UserStatus.ENABLED,
            "org_id": org_id,
            "sex": request.sex,
            "email": request.email,
            "avatar": request.avatar,
            "mobile": request.mobile,
            "address": request.address,
            "describe": request.describe,
            "is_admin": request.is_admin,
        }
        role_ids: list[int] = []
        if request.role_ids:
            role_ids = self._roles.filter_role_ids(operator, request.role_ids, False)
        try:
            with self._db.transaction():
                self._db.insert(USER_TABLE, row)
                self._assign_roles(user_id, role_ids)
        except DuplicateEntryError as exc:
            raise ServiceError(_DUPLICATE_USER) from exc
        return user_id

    def register(self, username: str, password: str) -> str:
        """Self-registration: a new organisation managed by the new user."""
        user_id = str(uuid.uuid4())
        salt = _new_salt()
        row: dict[str, Any] = {
            "id": user_id,
            "name": username,
            "nickname": username,
            "password": _hash_password(password, salt),
            "salt": salt,
            "status": UserStatus.ENABLED,
        }
        org = Org(pid="", name=f"Org-{user_id}", manager_id=user_id, manager_name=username)
        try:
            with self._db.transaction():
                try:
                    row["org_id"] = self._orgs.add(org)
                except ServiceError as exc:
                    raise ServiceError(f"添加组织失败: {exc}") from exc
                self._db.insert(USER_TABLE, row)
                self._assign_roles(user_id, self._register_role_ids)
        except DuplicateEntryError as exc:
            raise ServiceError(_DUPLICATE_USER) from exc
        return user_id

    def delete(self, ids: Sequence[str]) -> None:
        """Delete users and their role assignments."""
        targets = list(ids)
        with self._db.transaction():
            try:
                self._db.delete(USER_TABLE, {"id": targets})
            except (sqlite3.Error, ValueError) as exc:
                raise ServiceError(f"删除用户失败: {exc}") from exc
            for user_id in targets:
                self._store.remove_filtered_grouping_policy(0, user_subject(user_id))

    def edit_personal_info(self, update: UserProfileUpdate) -> None:
        data = {
            "nickname": update.nickname,
            "email": update.email,
            "avatar": update.avatar,
            "mobile": update.mobile,
            "address": update.address,
            "describe": update.describe,
        }
        try:
            self._db.update(USER_TABLE, data, {"id": update.id})
        except (sqlite3.Error, ValueError) as exc:
            raise ServiceError(f"修改用户信息失败: {exc}") from exc

    def edit_user_roles(self, operator: ContextUser, user_id: str, role_ids: Sequence[int]) -> None:
        """Replace the user's roles; an empty list leaves them unchanged."""
        if not role_ids:
            return
        allowed = self._roles.filter_role_ids(operator, role_ids, False)
        if not allowed:
            return
        with self._db.transaction():
            self._store.remove_filtered_named_grouping_policy("g", 0, user_subject(user_id))
            self._assign_roles(user_id, allowed)

    def edit_user_status(self, user_id: str, enabled: bool) -> None:
        status = UserStatus.ENABLED if enabled else UserStatus.DISABLED
        try:
            self._db.update(USER_TABLE, {"status": status}, {"id": user_id})
        except (sqlite3.Error, ValueError) as exc:
            raise ServiceError(f"修改用户状态失败: {exc}") from exc

    def reset_password(self, user_id: str) -> None:
        """Set the user's password back to the default, with a fresh salt."""
        salt = _new_salt()
        data = {"salt": salt, "password": _hash_password(self._default_password, salt)}
        try:
            self._db.update(USER_TABLE, data, {"id": user_id})
        except (sqlite3.Error, ValueError) as exc:
            raise ServiceError(f"重置密码失败: {exc}") from exc

    def is_super_admin(self, user_id: str) -> bool:
        return self._super_admin_id is not None and user_id == self._super_admin_id

    def validate_password(self, hash_password: str, salt: str, password: str) -> None:
        """Raise unless ``password`` with ``salt`` hashes to ``hash_password``."""
        if _hash_password(password, salt) != hash_password:
            raise ServiceError("账号/密码错误")

    def get_by_id(self, user_id: str) -> User:
        row = self._find("id", user_id)
        if row is None:
            raise ServiceError("用户不存在")
        return _row_to_user(row)

    def get_by_username(self, username: str) -> User:
        row = self._find("name", username)
        if row is None:
            raise ServiceError(f"用户不存在: {username}")
        return _row_to_user(row)

    def list(
        self,
        operator: ContextUser,
        org_id: str,
        name: str = "",
        page_num: int = 0,
        page_size: int = 0,
    ) -> tuple[int, list[User]]:
        """Total count and one page of users; non-admins see only their own organisation."""
        admin = self.is_super_admin(operator.id)
        if not admin and org_id != operator.org_id:
            raise ServiceError("无数据权限访问")
        page = PageRequest(page_num, page_size).normalized()
        conditions: list[str] = []
        params: list[Any] = []
        if not admin:
            conditions.append('"org_id" = ?')
            params.append(org_id)
        if name:
            conditions.append('"name" = ?')
            params.append(name)
        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        table = f'"{USER_TABLE.name}"'
        try:
            total = int(self._db.query(f"SELECT COUNT(*) AS n FROM {table}{where}", params)[0]["n"])
            rows = self._db.query(
                f"SELECT * FROM {table}{where} ORDER BY rowid LIMIT ? OFFSET ?",
                [*params, page.page_size, page.offset],
            )
        except sqlite3.Error as exc:
            raise ServiceError(f"获取用户列表失败: {exc}") from exc
        return total, [_row_to_user(row) for row in rows]

    # -- helpers ---------------------------------------------------------

    def _find(self, column: str, value: str) -> Optional[dict[str, Any]]:
        try:
            rows = self._db.query(
                f'SELECT * FROM "{USER_TABLE.name}" WHERE "{column}" = ? LIMIT 1', [value]
            )
        except sqlite3.Error as exc:
            raise ServiceError(f"获取用户失败: {exc}") from exc
        return rows[0] if rows else None

    def _assign_roles(self, user_id: str, role_ids: Sequence[int]) -> None:
        subject = user_subject(user_id)
        for role_id in role_ids:
            self._store.add_named_grouping_policy("g", subject, str(role_id))