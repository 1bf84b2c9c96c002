"""Tests for database migrations."""

import importlib.util
import sys
from pathlib import Path

import pytest

from transit_snapshots.models import Base
from transit_snapshots.models.realtime import ENTITY_KIND_CHECK

MIGRATION_PATH = Path(__file__).parent.parent / "alembic/versions/001_initial_schema.py"


class TestMigrationScript:
    """Tests for migration script structure."""

    @pytest.fixture
    def migration_module(self) -> object:
        """Load the initial migration module."""
        spec = importlib.util.spec_from_file_location("migration_001", MIGRATION_PATH)
        assert spec is not None
        assert spec.loader is not None
        module = importlib.util.module_from_spec(spec)
        sys.modules["migration_001"] = module
        spec.loader.exec_module(module)
        return module

    def test_migration_has_revision_id(self, migration_module: object) -> None:
        assert migration_module.revision == "001"  # type: ignore[attr-defined]

    def test_migration_has_no_down_revision(self, migration_module: object) -> None:
        assert migration_module.down_revision is None  # type: ignore[attr-defined]

    def test_migration_has_upgrade_and_downgrade(self, migration_module: object) -> None:
        assert callable(migration_module.upgrade)  # type: ignore[attr-defined]
        assert callable(migration_module.downgrade)  # type: ignore[attr-defined]

    def test_entity_check_matches_model(self, migration_module: object) -> None:
        assert migration_module.ENTITY_KIND_CHECK == ENTITY_KIND_CHECK  # type: ignore[attr-defined]


class TestMigrationUpgradeOperations:
    """Tests for verifying the upgrade creates correct structures."""

    @pytest.fixture
    def migration_source(self) -> str:
        """Load migration source code for inspection."""
        return MIGRATION_PATH.read_text()

    def test_creates_every_model_table(self, migration_source: str) -> None:
        for table in Base.metadata.tables:
            assert f'op.create_table(\n        "{table}"' in migration_source, table

    def test_drops_every_model_table(self, migration_source: str) -> None:
        for table in Base.metadata.tables:
            assert f'op.drop_table("{table}")' in migration_source, table

    def test_children_dropped_before_parents(self, migration_source: str) -> None:
        downgrade = migration_source.split("def downgrade", 1)[1]
        order = [
            "entity_selectors",
            "stop_time_events",
            "stop_time_updates",
            "entities",
            "trip_updates",
            "snapshots",
            "providers",
        ]
        positions = [downgrade.index(f'op.drop_table("{name}")') for name in order]
        assert positions == sorted(positions)

    @pytest.mark.parametrize(
        "name",
        [
            "uq_snapshots_provider_ts",
            "ck_snapshots_incrementality",
            "ix_snapshots_provider_finished_ts",
            "pk_entities",
            "ck_entities_kind_reference",
            "ix_entities_snapshot_position",
            "uq_trip_updates_snapshot_entity",
            "uq_stop_time_updates_index",
            "pk_stop_time_events",
            "ck_stop_time_events_type",
            "uq_stop_times_trip_sequence",
            "ix_stops_provider_zone_platform",
        ],
    )
    def test_named_constraints_and_indexes(self, migration_source: str, name: str) -> None:
        assert f'"{name}"' in migration_source

    def test_snapshot_children_cascade(self, migration_source: str) -> None:
        assert migration_source.count('ondelete="CASCADE"') >= 8
