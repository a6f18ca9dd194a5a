"""
Record builders shared by the test modules.
"""

import sys
import uuid
from pathlib import Path
from typing import Iterable, Optional

from mcp_toolkit.core.models import Backend, BinaryTransport, Binding, EnvVar, HttpTransport
from mcp_toolkit.core.storage import SQLiteStorage

FAKE_BACKEND = Path(__file__).parent / "fake_backend.py"


def make_backend(
    name: str = "alpha",
    mode: str = "normal",
    env: Optional[Iterable[EnvVar]] = None,
    backend_id: Optional[str] = None,
) -> Backend:
    """Backend record running the scripted fake server."""
    return Backend(
        id=backend_id or f"backend-{uuid.uuid4().hex[:8]}",
        name=name,
        transport=BinaryTransport(path=sys.executable, args=["-u", str(FAKE_BACKEND)]),
        env=[EnvVar(key="FAKE_MODE", value=mode), *(env or [])],
    )


def make_http_backend(name: str, url: str, env: Optional[Iterable[EnvVar]] = None) -> Backend:
    return Backend(
        id=f"backend-{uuid.uuid4().hex[:8]}",
        name=name,
        transport=HttpTransport(url=url),
        env=list(env or []),
    )


def bind(
    storage: SQLiteStorage,
    backend: Backend,
    scope: str = "project",
    enabled: bool = True,
    overrides: Optional[Iterable[EnvVar]] = None,
) -> Binding:
    """Save a backend and bind it to a scope."""
    storage.save_backend(backend)
    binding = Binding(
        id=f"binding-{backend.id}-{scope}",
        backend_id=backend.id,
        scope=scope,
        enabled=enabled,
        overrides=list(overrides or []),
    )
    storage.save_binding(binding)
    return binding


def corrupt_transport(storage: SQLiteStorage, backend: Backend, transport: str) -> None:
    """Overwrite a stored backend's transport column with raw JSON."""
    with storage.get_connection() as conn:
        conn.execute("UPDATE backends SET transport = ? WHERE id = ?", (transport, backend.id))
