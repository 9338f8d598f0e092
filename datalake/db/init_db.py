from __future__ import annotations

import logging

from sqlalchemy import text

from datalake.db.migrations import apply_migrations
from datalake.db.models import Base
from datalake.db.session import get_engine

logger = logging.getLogger(__name__)


def initialize_database() -> None:
    """Create the status, queue and consumer tables, then apply pending migrations."""
    engine = get_engine()
    Base.metadata.create_all(bind=engine)

    applied = apply_migrations(engine)
    if applied:
        logger.info("Applied schema migrations %s to %s", applied, engine.url.render_as_string(hide_password=True))

    if engine.url.get_backend_name() == "sqlite":
        with engine.connect() as conn:
            conn.execute(text("PRAGMA optimize;"))
            conn.commit()
