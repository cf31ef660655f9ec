from alembic import op
import sqlalchemy as sa
from sqlalchemy.engine.reflection import Inspector


def _get_bind(conn: sa.engine.Connection | None = None) -> sa.engine.Connection:
    if conn is not None:
        return conn
    return op.get_bind()


def _inspector(conn: sa.engine.Connection | None = None) -> Inspector:
    return sa.inspect(_get_bind(conn))


def is_postgres(conn: sa.engine.Connection | None = None) -> bool:
    return _get_bind(conn).dialect.name == "postgresql"


def table_exists(table_name: str, conn: sa.engine.Connection | None = None) -> bool:
    return table_name in _inspector(conn).get_table_names()


def index_exists(
    table_name: str, index_name: str, conn: sa.engine.Connection | None = None
) -> bool:
    return any(idx.get("name") == index_name for idx in _inspector(conn).get_indexes(table_name))


def pg_constraint_exists(constraint_name: str, conn: sa.engine.Connection | None = None) -> bool:
    """Exclusion constraints are invisible to the inspector; ask pg_constraint."""
    bind = _get_bind(conn)
    row = bind.execute(
        sa.text("SELECT 1 FROM pg_constraint WHERE conname = :name"), {"name": constraint_name}
    ).first()
    return row is not None
