import pytest

from identsvc.models import (
    DEFAULT_PAGE_SIZE,
    AuthRule,
    AuthRuleMeta,
    AuthRuleNode,
    AuthRuleType,
    ContextUser,
    PageRequest,
    ServiceError,
    User,
    UserLoginRes,
    UserStatus,
    convert_user_to_login_res,
)


def _user(**overrides):
    password = "password"
    values = dict(
        id="uid-1",
        name="alice",
        nickname="Alice",
        password=password,
        salt="salty",
        status=UserStatus.DISABLED,
        org_id="org-1",
        mobile="555",
        avatar="a.png",
        is_admin=True,
        roles=[{1: "admin"}],
    )
    values.update(overrides)
    return User(**values)


def test_convert_user_copies_public_fields():
    user = _user()
    res = convert_user_to_login_res(user)
    assert (res.id, res.name, res.nickname) == (user.id, user.name, user.nickname)
    assert (res.mobile, res.avatar, res.org_id) == (user.mobile, user.avatar, user.org_id)
    assert res.is_admin is True


def test_convert_user_status_is_plain_int():
    res = convert_user_to_login_res(_user(status=UserStatus.ENABLED))
    assert res.status == 1
    assert res.roles == []


def test_context_user_from_login_res_keeps_fields():
    res = UserLoginRes(id="u", name="bob", org_id="o", status=2)
    ctx = ContextUser.from_login_res(res)
    assert (ctx.id, ctx.name, ctx.org_id, ctx.status) == ("u", "bob", "o", 2)


def test_meta_to_dict_uses_camel_case_keys():
    meta = AuthRuleMeta(keep_alive=True, max_num_of_open_tab=3, hide_in_breadcrumb=True)
    data = meta.to_dict()
    assert data["keepAlive"] is True
    assert data["maxNumOfOpenTab"] == 3
    assert data["hideInBreadcrumb"] is True
    assert "keep_alive" not in data


def test_node_to_dict_nests_children():
    root = AuthRule(id=1, name="root", type=AuthRuleType.DIRECTORY)
    leaf = AuthRule(id=2, pid=1, name="btn", type=AuthRuleType.BUTTON)
    node = AuthRuleNode(root, [AuthRuleNode(leaf)])
    data = node.to_dict()
    assert data["id"] == 1
    assert data["children"][0]["pid"] == 1
    assert data["children"][0]["type"] == 2
    assert data["children"][0]["children"] == []
    assert data["createdAt"] is None


def test_page_request_defaults():
    page = PageRequest().normalized()
    assert page.page_num == 1
    assert page.page_size == DEFAULT_PAGE_SIZE
    assert PageRequest().offset == 0


def test_page_request_keeps_given_values():
    page = PageRequest(page_num=3, page_size=5)
    assert page.normalized() == page
    assert page.offset == 10


def test_service_error_carries_message():
    err = ServiceError("denied")
    assert str(err) == "denied"
    assert err.args == ("denied",)
    with pytest.raises(ServiceError, match="denied"):
        raise err