from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy import Connection, Engine, text


@dataclass(frozen=True)
class MigrationStep:
    version: int
    name: str
    apply: Callable[[Connection], None]


def _ensure_schema_migrations_table(conn: Connection) -> None:
    conn.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                applied_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
    )


def _migration_0001_baseline(_conn: Connection) -> None:
    # Tables come from the ORM metadata; later schema changes append steps here.
    return


MIGRATIONS: tuple[MigrationStep, ...] = (MigrationStep(version=1, name="baseline", apply=_migration_0001_baseline),)


def apply_migrations(engine: Engine) -> list[int]:
    """Run every step not yet recorded in ``schema_migrations``; return the versions applied now."""
    applied: list[int] = []
    with engine.begin() as conn:
        _ensure_schema_migrations_table(conn)
        existing = {int(row[0]) for row in conn.execute(text("SELECT version FROM schema_migrations")).all()}

        for step in MIGRATIONS:
            if step.version in existing:
                continue
            step.apply(conn)
            conn.execute(
                text("INSERT INTO schema_migrations(version, name) VALUES (:version, :name)"),
                {"version": step.version, "name": step.name},
            )
            applied.append(step.version)
    return applied
