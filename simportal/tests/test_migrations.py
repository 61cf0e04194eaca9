"""
Tests for the Alembic revision. `op` is replaced with a MagicMock so upgrade()
runs without a database; the recorded DDL calls are compared with the ORM
model that Base.metadata.create_all builds from.
"""
import importlib
from unittest.mock import patch

from simportal.models.training_run import TrainingRunORM

ACTIVE_INDEX = "uq_training_runs_active_learner"

migration = importlib.import_module("simportal.alembic.versions.001_initial_schema")


def _created_indexes() -> dict:
    with patch.object(migration, "op") as op:
        migration.upgrade()
    return {call.args[0]: call for call in op.create_index.call_args_list}


def test_active_learner_index_is_partial_on_both_dialects():
    created = _created_indexes()[ACTIVE_INDEX]
    assert created.kwargs["unique"] is True
    assert str(created.kwargs["postgresql_where"]) == "status = 'active'"
    assert str(created.kwargs["sqlite_where"]) == "status = 'active'"


def test_active_learner_index_matches_model():
    model_index = next(i for i in TrainingRunORM.__table__.indexes if i.name == ACTIVE_INDEX)
    created = _created_indexes()[ACTIVE_INDEX]

    assert created.args[1] == TrainingRunORM.__tablename__
    assert created.args[2] == [column.name for column in model_index.columns]
    for dialect in ("postgresql", "sqlite"):
        assert str(created.kwargs[f"{dialect}_where"]) == str(
            model_index.dialect_options[dialect]["where"]
        )
