from __future__ import annotations

from pathlib import Path

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

ALEMBIC_INI = Path(__file__).resolve().parents[2] / "alembic.ini"  # server/alembic.ini


def script_heads(ini_path: Path = ALEMBIC_INI) -> set[str]:
    from alembic.config import Config
    from alembic.script import ScriptDirectory

    return set(ScriptDirectory.from_config(Config(str(ini_path))).get_heads())


def current_revision(engine: Engine) -> str | None:
    with engine.connect() as conn:
        if not inspect(conn).has_table("alembic_version"):
            return None
        row = conn.execute(text("SELECT version_num FROM alembic_version")).first()
        return row[0] if row else None


def assert_db_up_to_date(engine: Engine) -> None:
    """Fail fast if alembic_version is missing or not at head."""

    heads = script_heads()
    rev = current_revision(engine)

    if rev is None:
        raise RuntimeError(
            "Database is not stamped with Alembic (missing alembic_version). Run: alembic upgrade head"
        )
    if rev not in heads:
        raise RuntimeError(f"Database revision {rev} is not at head {sorted(heads)}. Run: alembic upgrade head")
