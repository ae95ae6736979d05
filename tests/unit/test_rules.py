import itertools

import pytest

import main


OWNER_ID = "owner"


@pytest.mark.parametrize(
    "principal_id, role",
    list(itertools.product([OWNER_ID, "someone-else"], ["user", "admin"])),
)
def test_can_modify_truth_table(principal_id, role):
    principal = main.Principal(id=principal_id, role=role)
    task = main.Task(title="t", owner_id=OWNER_ID)
    expected = role == "admin" or principal_id == OWNER_ID
    assert main.can_modify(principal, task) is expected


def test_can_read_all_only_admin():
    assert main.can_read_all(main.Principal(id="a", role="admin"))
    assert not main.can_read_all(main.Principal(id="u", role="user"))


def test_can_change_role():
    admin = main.Principal(id="a", role="admin")
    user = main.Principal(id="u", role="user")
    assert main.can_change_role(admin, "u")
    # себе роль не меняет даже администратор
    assert not main.can_change_role(admin, "a")
    assert not main.can_change_role(user, "a")
    assert not main.can_change_role(user, "u")


def test_principal_rejects_unknown_role():
    with pytest.raises(ValueError):
        main.Principal(id="x", role="superuser")
