import pytest

from freightctl.errors import Unauthorized, ValidationError
from freightctl.identity import IdentityOracle


def test_explicit_user():
    me = IdentityOracle("u1", "Trucker").current_user()
    assert (me.id, me.role) == ("u1", "trucker")


def test_falls_back_to_env(monkeypatch):
    monkeypatch.setenv("FREIGHTCTL_USER", "env-user")
    monkeypatch.setenv("FREIGHTCTL_ROLE", "admin")
    me = IdentityOracle().current_user()
    assert me.id == "env-user" and me.is_admin


def test_missing(monkeypatch):
    monkeypatch.delenv("FREIGHTCTL_USER", raising=False)
    monkeypatch.delenv("FREIGHTCTL_ROLE", raising=False)
    with pytest.raises(Unauthorized):
        IdentityOracle().current_user()
    with pytest.raises(Unauthorized):
        IdentityOracle("u1").current_user()


def test_unknown_role():
    with pytest.raises(ValidationError):
        IdentityOracle("u1", "pilot").current_user()
