"""Persistent parent/name to node id cache backed by SQLAlchemy."""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    insert,
    select,
)
from sqlalchemy.engine import make_url

if TYPE_CHECKING:
    from cloud_drive.config import AppConfig

logger = logging.getLogger(__name__)

metadata = MetaData()

# Append-only: rows are never updated or deleted. ``seq`` orders rows so
# that the most recent mapping of a (parent, name) pair wins on lookup.
path_cache = Table(
    "path_cache",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("parent", String, nullable=False),
    Column("name", String, nullable=False),
    Column("id", String, nullable=False),
    Index("idx_path_cache_parent_name", "parent", "name"),
    Index("idx_path_cache_parent", "parent"),
)


class NodeCache:
    """Memoizes which node id a name resolves to under a parent folder.

    Entries never expire. Renames, moves and deletions made outside this
    client are not reflected, so a hit may be stale.
    """

    def __init__(self, database_url: str) -> None:
        """Open (and if needed create) the cache database.

        Args:
            database_url: SQLAlchemy database URL, e.g. ``sqlite:///cache.sqlite``.
        """
        url = make_url(database_url)
        connect_args = {}
        if url.get_backend_name() == "sqlite":
            connect_args["check_same_thread"] = False
            if url.database and url.database != ":memory:":
                os.makedirs(os.path.dirname(os.path.abspath(url.database)), exist_ok=True)
        self._engine = create_engine(url, connect_args=connect_args)
        metadata.create_all(self._engine)

    def put(self, parent: str, name: str, child: str) -> None:
        """Record that ``name`` under ``parent`` resolves to ``child``."""
        with self._engine.begin() as conn:
            conn.execute(insert(path_cache).values(parent=parent, name=name, id=child))
        logger.debug("[put] cached node; parent:%s;name:%s;id:%s", parent, name, child)

    def get(self, parent: str, name: str) -> str | None:
        """Return the cached id of ``name`` under ``parent``, or None on a miss."""
        stmt = (
            select(path_cache.c.id)
            .where(path_cache.c.parent == parent, path_cache.c.name == name)
            .order_by(path_cache.c.seq.desc())
            .limit(1)
        )
        with self._engine.connect() as conn:
            child = conn.execute(stmt).scalar_one_or_none()
        if child is None:
            logger.debug("[get] cache miss; parent:%s;name:%s", parent, name)
        return child

    def close(self) -> None:
        """Dispose of the engine and its pooled connections; rows stay on disk."""
        self._engine.dispose()


def node_cache_from_config(config: AppConfig) -> NodeCache:
    """Construct a NodeCache from application configuration."""
    return NodeCache(config.resolved_cache_url())
