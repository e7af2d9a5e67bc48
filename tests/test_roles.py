import pytest

from identsvc.auth_rules import AuthRuleService, RuleRequest
from identsvc.database import Database
from identsvc.models import ContextUser, RoleStatus, ServiceError
from identsvc.policy import PolicyStore, user_subject
from identsvc.roles import RoleRequest, RoleService

ADMIN = ContextUser(id="admin", org_id="org1")
MEMBER = ContextUser(id="u1", org_id="org1")


@pytest.fixture
def env():
    db = Database()
    store = PolicyStore()
    rules = AuthRuleService(db, store, super_admin_id="admin")
    roles = RoleService(db, store, rules, super_admin_id="admin")
    yield db, store, rules, roles
    db.close()


def test_add_and_get_round_trip(env):
    _, _, rules, roles = env
    r1 = rules.add(RuleRequest(name="dash"))
    r2 = rules.add(RuleRequest(name="users"))
    role_id = roles.add(ADMIN, RoleRequest(name="editor", org_id="org1", menu_ids=[r1, r2]))
    role = roles.get(role_id)
    assert role.name == "editor"
    assert role.org_id == "org1"
    assert role.creator_id == "admin"
    assert role.status == RoleStatus.ENABLED
    assert sorted(role.menu_ids) == sorted([r1, r2])


def test_add_filters_menus_for_non_admin(env):
    _, store, rules, roles = env
    r1 = rules.add(RuleRequest(name="dash"))
    r2 = rules.add(RuleRequest(name="users"))
    base = roles.add(ADMIN, RoleRequest(name="base", org_id="org1", menu_ids=[r1]))
    store.add_named_grouping_policy("g", user_subject("u1"), str(base))
    created = roles.add(MEMBER, RoleRequest(name="sub", org_id="org1", menu_ids=[r1, r2]))
    assert roles.get(created).menu_ids == [r1]


def test_get_missing_returns_none(env):
    _, _, _, roles = env
    assert roles.get(999) is None
    assert roles.get_tree_by_role_id(999) is None


def test_edit_status(env):
    _, _, _, roles = env
    role_id = roles.add(ADMIN, RoleRequest(name="r", org_id="org1"))
    roles.edit_status(role_id, False)
    assert roles.get(role_id).status == RoleStatus.DISABLED
    roles.edit_status(role_id, True)
    assert roles.get(role_id).status == RoleStatus.ENABLED


def test_edit_replaces_name_and_menus(env):
    _, _, rules, roles = env
    r1 = rules.add(RuleRequest(name="dash"))
    r2 = rules.add(RuleRequest(name="users"))
    role_id = roles.add(ADMIN, RoleRequest(name="old", org_id="org1", menu_ids=[r1]))
    roles.edit(ADMIN, RoleRequest(id=role_id, name="new", menu_ids=[r2]))
    role = roles.get(role_id)
    assert role.name == "new"
    assert role.menu_ids == [r2]


def test_edit_without_access_refused(env):
    _, _, _, roles = env
    role_id = roles.add(ADMIN, RoleRequest(name="r", org_id="org1"))
    with pytest.raises(ServiceError, match="没有修改这个角色的权限"):
        roles.edit(MEMBER, RoleRequest(id=role_id, name="x"))


def test_delete_without_access_refused(env):
    _, _, _, roles = env
    role_id = roles.add(ADMIN, RoleRequest(name="r", org_id="org1"))
    with pytest.raises(ServiceError, match="没有删除这个角色的权限"):
        roles.delete_by_ids(MEMBER, [role_id])
    assert roles.get(role_id) is not None


def test_creator_may_delete_own_role(env):
    _, _, _, roles = env
    role_id = roles.add(MEMBER, RoleRequest(name="mine", org_id="org1"))
    roles.delete_by_ids(MEMBER, [role_id])
    assert roles.get(role_id) is None


def test_delete_removes_grants_and_assignments(env):
    _, store, rules, roles = env
    r1 = rules.add(RuleRequest(name="dash"))
    role_id = roles.add(ADMIN, RoleRequest(name="r", org_id="org1", menu_ids=[r1]))
    store.add_named_grouping_policy("g", user_subject("u9"), str(role_id))
    roles.delete_by_ids(ADMIN, [role_id])
    assert roles.get(role_id) is None
    assert store.get_filtered_named_policy("p", 0, str(role_id)) == []
    assert roles.get_role_ids_by_user_id("u9") == []


def test_list_by_org_id(env):
    _, _, _, roles = env
    a = roles.add(ADMIN, RoleRequest(name="a", org_id="org1"))
    b = roles.add(ADMIN, RoleRequest(name="b", org_id="org1"))
    roles.add(ADMIN, RoleRequest(name="c", org_id="org2"))
    assert [r.id for r in roles.list_by_org_id("org1")] == [a, b]


def test_trees(env):
    _, _, _, roles = env
    root = roles.add(ADMIN, RoleRequest(name="root", org_id="org1"))
    child = roles.add(ADMIN, RoleRequest(name="child", org_id="org1", pid=root))
    leaf = roles.add(ADMIN, RoleRequest(name="leaf", org_id="org1", pid=child))
    tree = roles.get_tree_by_role_id(root)
    assert tree.info.id == root
    assert tree.info.enabled is True
    assert [c.info.id for c in tree.children] == [child]
    assert [c.info.id for c in tree.children[0].children] == [leaf]
    forest = roles.list_trees_by_org_id("org1")
    assert [t.info.id for t in forest] == [root]


def test_roles_by_user(env):
    _, store, _, roles = env
    a = roles.add(ADMIN, RoleRequest(name="a", org_id="org1"))
    b = roles.add(ADMIN, RoleRequest(name="b", org_id="org1"))
    store.add_named_grouping_policy("g", user_subject("u5"), str(b))
    store.add_named_grouping_policy("g", user_subject("u5"), str(a))
    assert roles.get_role_ids_by_user_id("u5") == [b, a]
    assert [r.name for r in roles.get_roles_by_user_id("u5")] == ["b", "a"]


def test_filter_role_ids_keeps_all(env):
    _, _, _, roles = env
    assert roles.filter_role_ids(MEMBER, [3, 1, 2], False) == [3, 1, 2]
    assert roles.filter_role_ids(ADMIN, [5], True) == [5]