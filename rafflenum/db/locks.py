"""Draw-scoped advisory locks used to serialize autopay runs."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

AUTOPAY_LOCK_NAMESPACE = 911002
"""First key of the two-key PostgreSQL advisory lock; the second is the draw id."""

_local_guard = threading.Lock()
_local_locks: dict[tuple[str, int, int], threading.Lock] = {}


def _local_lock_for(engine: Engine, namespace: int, key: int) -> threading.Lock:
    ident = (engine.url.render_as_string(hide_password=True), namespace, key)
    with _local_guard:
        lock = _local_locks.get(ident)
        if lock is None:
            lock = threading.Lock()
            _local_locks[ident] = lock
        return lock


@contextmanager
def advisory_lock(
    engine: Engine, key: int, *, namespace: int = AUTOPAY_LOCK_NAMESPACE
) -> Iterator[None]:
    """Hold a cooperative lock scoped to ``(namespace, key)``.

    On PostgreSQL a session-level ``pg_advisory_lock`` is taken on a dedicated
    connection that stays open for the duration of the block, so the lock
    survives the many short transactions issued inside it. Other backends
    (SQLite for development and tests) have no advisory locks; a process-local
    lock keyed the same way is used instead.

    Ordinary purchase requests never take this lock.
    """

    if engine.dialect.name == "postgresql":
        with engine.connect() as conn:
            conn.execute(
                text("select pg_advisory_lock(:ns, :key)"),
                {"ns": namespace, "key": key},
            )
            conn.commit()
            logger.debug("advisory lock acquired ns=%s key=%s", namespace, key)
            try:
                yield
            finally:
                conn.execute(
                    text("select pg_advisory_unlock(:ns, :key)"),
                    {"ns": namespace, "key": key},
                )
                conn.commit()
                logger.debug("advisory lock released ns=%s key=%s", namespace, key)
        return

    lock = _local_lock_for(engine, namespace, key)
    with lock:
        logger.debug("local lock acquired ns=%s key=%s", namespace, key)
        yield
