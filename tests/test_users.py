from types import SimpleNamespace

import pytest

from identsvc.auth_rules import AuthRuleService
from identsvc.database import Database
from identsvc.models import ContextUser, ServiceError, UserStatus
from identsvc.orgs import OrgService
from identsvc.policy import PolicyStore
from identsvc.roles import RoleService
from identsvc.users import (
    DEFAULT_PASSWORD,
    UserCreateRequest,
    UserProfileUpdate,
    UserService,
    hash_password,
)

ADMIN = ContextUser(id="admin", name="root", org_id="org-1")
MEMBER = ContextUser(id="member", name="member", org_id="org-1")


@pytest.fixture
def env():
    db = Database()
    store = PolicyStore()
    rules = AuthRuleService(db, store, super_admin_id="admin")
    orgs = OrgService(db)
    roles = RoleService(db, store, rules, super_admin_id="admin")
    users = UserService(db, store, orgs, roles, super_admin_id="admin")
    yield SimpleNamespace(db=db, store=store, orgs=orgs, roles=roles, users=users)
    db.close()


def _create(env, name, org_id="", role_ids=()):
    password = "password"
    request = UserCreateRequest(
        user_name=name, password=password, org_id=org_id, role_ids=list(role_ids)
    )
    return env.users.create(ADMIN, request)


def test_create_round_trip_defaults_org_to_operator(env):
    user_id = _create(env, "alice")
    user = env.users.get_by_id(user_id)
    assert user.name == "alice"
    assert user.org_id == ADMIN.org_id
    assert user.status == UserStatus.ENABLED
    assert env.users.get_by_username("alice").id == user_id


def test_create_assigns_roles(env):
    user_id = _create(env, "alice", role_ids=[3, 5])
    assert env.roles.get_role_ids_by_user_id(user_id) == [3, 5]


def test_duplicate_username_is_refused(env):
    _create(env, "alice")
    with pytest.raises(ServiceError, match="添加用户失败，用户名已存在"):
        _create(env, "alice")


def test_stored_password_is_hashed_and_validates(env):
    user = env.users.get_by_id(_create(env, "alice"))
    assert user.password != "password"
    assert user.password == hash_password("password", user.salt)
    env.users.validate_password(user.password, user.salt, "password")
    with pytest.raises(ServiceError, match="账号/密码错误"):
        env.users.validate_password(user.password, user.salt, "secret")


def test_hash_depends_on_salt():
    assert hash_password("password", "a") == hash_password("password", "a")
    assert hash_password("password", "a") != hash_password("password", "b")


def test_register_creates_org_and_role(env):
    password = "password"
    user_id = env.users.register("bob", password)
    user = env.users.get_by_id(user_id)
    org = env.orgs.get(user.org_id)
    assert org.name == f"Org-{user_id}"
    assert org.manager_id == user_id
    assert org.manager_name == "bob"
    assert env.roles.get_role_ids_by_user_id(user_id) == [2]
    env.users.validate_password(user.password, user.salt, password)


def test_register_duplicate_rolls_back_org(env):
    password = "password"
    env.users.register("bob", password)
    before = len(env.orgs.list_trees())
    with pytest.raises(ServiceError, match="用户名已存在"):
        env.users.register("bob", password)
    assert len(env.orgs.list_trees()) == before


def test_delete_removes_user_and_roles(env):
    user_id = _create(env, "alice", role_ids=[4])
    keep_id = _create(env, "carol", role_ids=[4])
    env.users.delete([user_id])
    with pytest.raises(ServiceError, match="用户不存在"):
        env.users.get_by_id(user_id)
    assert env.roles.get_role_ids_by_user_id(user_id) == []
    assert env.roles.get_role_ids_by_user_id(keep_id) == [4]


def test_edit_personal_info(env):
    user_id = _create(env, "alice")
    env.users.edit_personal_info(
        UserProfileUpdate(id=user_id, nickname="Ali", email="alice@example.com")
    )
    user = env.users.get_by_id(user_id)
    assert user.nickname == "Ali"
    assert user.email == "alice@example.com"


def test_edit_user_roles_replaces_and_empty_keeps(env):
    user_id = _create(env, "alice", role_ids=[1])
    env.users.edit_user_roles(ADMIN, user_id, [7, 8])
    assert env.roles.get_role_ids_by_user_id(user_id) == [7, 8]
    env.users.edit_user_roles(ADMIN, user_id, [])
    assert env.roles.get_role_ids_by_user_id(user_id) == [7, 8]


def test_edit_user_status(env):
    user_id = _create(env, "alice")
    env.users.edit_user_status(user_id, False)
    assert env.users.get_by_id(user_id).status == UserStatus.DISABLED
    env.users.edit_user_status(user_id, True)
    assert env.users.get_by_id(user_id).status == UserStatus.ENABLED


def test_reset_password_uses_default(env):
    user_id = _create(env, "alice")
    old = env.users.get_by_id(user_id)
    env.users.reset_password(user_id)
    new = env.users.get_by_id(user_id)
    assert new.salt != old.salt
    env.users.validate_password(new.password, new.salt, DEFAULT_PASSWORD)


def test_is_super_admin(env):
    assert env.users.is_super_admin("admin") is True
    assert env.users.is_super_admin("member") is False


def test_get_by_username_missing(env):
    with pytest.raises(ServiceError, match="用户不存在: ghost"):
        env.users.get_by_username("ghost")


def test_list_refuses_other_org_for_non_admin(env):
    with pytest.raises(ServiceError, match="无数据权限访问"):
        env.users.list(MEMBER, "org-2")


def test_list_scopes_and_pages(env):
    names = ["a1", "a2", "a3"]
    for name in names:
        _create(env, name, org_id="org-1")
    _create(env, "b1", org_id="org-2")

    total, users = env.users.list(MEMBER, "org-1")
    assert total == len(names)
    assert {u.name for u in users} == set(names)

    admin_total, _ = env.users.list(ADMIN, "org-1")
    assert admin_total == len(names) + 1

    total, first = env.users.list(MEMBER, "org-1", page_num=1, page_size=2)
    _, second = env.users.list(MEMBER, "org-1", page_num=2, page_size=2)
    assert len(first) == 2
    assert len(first) + len(second) == total
    assert {u.name for u in first + second} == set(names)

    total, found = env.users.list(MEMBER, "org-1", name="a2")
    assert total == 1
    assert [u.name for u in found] == ["a2"]