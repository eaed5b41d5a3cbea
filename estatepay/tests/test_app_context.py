import pytest

from estatepay import app_context
from estatepay.app.payments import Actor, UserRole


def test_unconfigured_context_raises(monkeypatch):
    monkeypatch.setitem(app_context._hooks, "get_conn", None)
    monkeypatch.setitem(app_context._hooks, "get_current_actor", None)

    with pytest.raises(RuntimeError):
        app_context.get_conn()
    with pytest.raises(RuntimeError):
        app_context.get_current_actor(authorization="Bearer token")


def test_configured_hooks_are_called(monkeypatch):
    monkeypatch.setattr(app_context, "_hooks", dict(app_context._hooks))
    actor = Actor(user_id="tenant-1", role=UserRole.TENANT)
    seen = []

    def resolve(*, authorization=None):
        seen.append(authorization)
        return actor

    app_context.configure(get_conn=lambda: "conn", get_current_actor=resolve)

    assert app_context.get_conn() == "conn"
    assert app_context.get_current_actor(authorization="Bearer abc") is actor
    assert seen == ["Bearer abc"]
