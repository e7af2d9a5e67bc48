"""Domain models shared by the identity services."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import IntEnum
from typing import Any, Callable, Optional

DEFAULT_PAGE_SIZE = 10

ROLE_SUPER_ADMIN = "超级管理员"
ROLE_ORG_MAINTAINER = "前台组织所有者"
ROLE_USER = "普通用户"


class ServiceError(Exception):
    """Raised when a service operation is refused or fails."""


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class AuthRuleType(IntEnum):
    DIRECTORY = 0
    MENU = 1
    BUTTON = 2


@dataclass
class AuthRuleMeta:
    """Front-end presentation settings of a menu rule."""

    title: str = ""
    icon: str = ""
    active_icon: str = ""
    keep_alive: bool = False
    hide_in_menu: bool = False
    hide_in_tab: bool = False
    hide_in_breadcrumb: bool = False
    hide_children_in_menu: bool = False
    authority: str = ""
    badge: str = ""
    badge_type: str = ""
    badge_variants: str = ""
    full_path_key: bool = False
    active_path: str = ""
    affix_tab: bool = False
    affix_tab_order: int = 0
    iframe_src: str = ""
    ignore_access: bool = False
    link: str = ""
    max_num_of_open_tab: int = 0
    menu_visible_with_forbidden: bool = False
    open_in_new_window: bool = False
    order: int = 0
    query: str = ""
    no_basic_layout: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {_camel(f.name): getattr(self, f.name) for f in fields(self)}


@dataclass
class AuthRule:
    id: int = 0
    pid: int = 0
    name: str = ""
    type: AuthRuleType = AuthRuleType.DIRECTORY
    path: str = ""
    component: str = ""
    meta: AuthRuleMeta = field(default_factory=AuthRuleMeta)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pid": self.pid,
            "name": self.name,
            "type": int(self.type),
            "path": self.path,
            "component": self.component,
            "meta": self.meta.to_dict(),
            "createdAt": _timestamp(self.created_at),
            "updatedAt": _timestamp(self.updated_at),
        }


@dataclass
class AuthRuleNode:
    """A rule together with its child rules."""

    rule: AuthRule
    children: list[AuthRuleNode] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = self.rule.to_dict()
        data["children"] = [child.to_dict() for child in self.children]
        return data


class LoginStatus(IntEnum):
    SUCCESS = 1
    FAILED = 2


@dataclass
class LoginLog:
    id: int = 0
    org_id: str = ""
    login_name: str = ""
    ip: str = ""
    browser: str = ""
    success: bool = False
    message: str = ""
    login_time: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class OperLog:
    id: int = 0
    org_id: str = ""
    oper_name: str = ""
    oper_url: str = ""
    oper_method: str = ""
    oper_ip: str = ""
    oper_time: Optional[datetime] = None
    created_at: Optional[datetime] = None


class OrgStatus(IntEnum):
    ENABLED = 1
    DISABLED = 2


@dataclass
class Org:
    id: str = ""
    pid: str = ""
    name: str = ""
    manager_id: str = ""
    manager_name: str = ""
    status: OrgStatus = OrgStatus.ENABLED
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class OrgConfig:
    org_id: str = ""
    key: str = ""
    value: str = ""


class RoleStatus(IntEnum):
    ENABLED = 1
    DISABLED = 2


@dataclass
class Role:
    id: int = 0
    pid: int = 0
    org_id: str = ""
    name: str = ""
    status: RoleStatus = RoleStatus.ENABLED
    creator_id: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    menu_ids: list[int] = field(default_factory=list)


class UserStatus(IntEnum):
    ENABLED = 1
    DISABLED = 2


class UserSex(IntEnum):
    UNKNOWN = 0
    MALE = 1
    FEMALE = 2


@dataclass
class UserLoginRes:
    """The user data handed out after a successful login."""

    id: str = ""
    name: str = ""
    nickname: str = ""
    mobile: str = ""
    status: int = 0
    is_admin: bool = False
    avatar: str = ""
    org_id: str = ""
    roles: list[dict[int, str]] = field(default_factory=list)


@dataclass
class ContextUser(UserLoginRes):
    """The user on whose behalf a request runs."""

    @classmethod
    def from_login_res(cls, res: UserLoginRes) -> ContextUser:
        return cls(**asdict(res))


@dataclass
class User:
    id: str = ""
    name: str = ""
    nickname: str = ""
    password: str = ""
    salt: str = ""
    status: UserStatus = UserStatus.ENABLED
    org_id: str = ""
    roles: list[dict[int, str]] = field(default_factory=list)
    sex: UserSex = UserSex.UNKNOWN
    email: str = ""
    avatar: str = ""
    mobile: str = ""
    address: str = ""
    describe: str = ""
    is_admin: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class PageRequest:
    """Paging parameters; zero means "use the default"."""

    page_num: int = 0
    page_size: int = 0

    def normalized(self, default_size: int = DEFAULT_PAGE_SIZE) -> PageRequest:
        return PageRequest(
            page_num=self.page_num or 1,
            page_size=self.page_size or default_size,
        )

    @property
    def offset(self) -> int:
        page = self.normalized()
        return (page.page_num - 1) * page.page_size


@dataclass
class TimeTask:
    func_name: str
    run: Optional[Callable[[], Any]] = None
    param: list[str] = field(default_factory=list)


@dataclass
class TokenOptions:
    server_name: str = ""
    cache_key: str = ""
    timeout: int = 0
    max_refresh: int = 0
    multi_login: bool = False
    encrypt_key: bytes = b""
    exclude_paths: list[str] = field(default_factory=list)
    cache_model: str = ""
    dist_path: str = ""


@dataclass
class IntrospectRes:
    user_id: str = ""
    user_name: str = ""
    org_id: str = ""
    roles: list[dict[int, str]] = field(default_factory=list)


def convert_user_to_login_res(user: User) -> UserLoginRes:
    """Build the login response for a stored user."""
    return UserLoginRes(
        id=user.id,
        name=user.name,
        nickname=user.nickname,
        mobile=user.mobile,
        avatar=user.avatar,
        is_admin=user.is_admin,
        org_id=user.org_id,
        status=int(user.status),
    )