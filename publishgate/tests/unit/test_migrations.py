from __future__ import annotations

import importlib.util
from pathlib import Path

from alembic.migration import MigrationContext
from alembic.operations import Operations
import sqlalchemy as sa

from publishgate.domain.models import Base


_VERSIONS = Path(__file__).resolve().parents[2] / "persistence" / "alembic" / "versions"


def _load_revision(filename: str):
    spec = importlib.util.spec_from_file_location(filename.removesuffix(".py"), _VERSIONS / filename)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_initial_revision_matches_the_models() -> None:
    # Run the revision against an empty database and compare its schema with the ORM metadata.
    revision = _load_revision("0001_authz_governance.py")
    assert revision.down_revision is None
    engine = sa.create_engine("sqlite://")
    with engine.begin() as conn:
        with Operations.context(MigrationContext.configure(conn)):
            revision.upgrade()
        inspector = sa.inspect(conn)
        assert set(inspector.get_table_names()) == set(Base.metadata.tables)
        for table in Base.metadata.sorted_tables:
            migrated = {column["name"] for column in inspector.get_columns(table.name)}
            assert migrated == {column.name for column in table.columns}, table.name

        with Operations.context(MigrationContext.configure(conn)):
            revision.downgrade()
        assert sa.inspect(conn).get_table_names() == []
    engine.dispose()
