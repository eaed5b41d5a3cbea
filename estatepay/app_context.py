"""Late-bound hooks that let the payments routers reach the running app.

``estatepay.main`` owns the database settings and the token verifier. The
routers and the ledger repository only need a connection factory and an
actor resolver, so ``main`` registers both here at import time.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

if TYPE_CHECKING:
    from .app.payments.models import Actor

ConnectionFactory = Callable[[], Any]
ActorResolver = Callable[..., "Actor"]

_hooks: Dict[str, Optional[Callable[..., Any]]] = {
    "get_conn": None,
    "get_current_actor": None,
}


def configure(*, get_conn: ConnectionFactory, get_current_actor: ActorResolver) -> None:
    _hooks["get_conn"] = get_conn
    _hooks["get_current_actor"] = get_current_actor


def _hook(name: str) -> Callable[..., Any]:
    hook = _hooks[name]
    if hook is None:
        raise RuntimeError(f"estatepay.app_context.{name} used before configure() was called")
    return hook


def get_conn() -> Any:
    """Open a new psycopg2 connection through the registered factory."""
    return _hook("get_conn")()


def get_current_actor(*, authorization: Optional[str] = None) -> Actor:
    """Resolve the caller from an ``Authorization`` header value."""
    return _hook("get_current_actor")(authorization=authorization)
