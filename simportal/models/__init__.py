"""
models/__init__.py — imports all ORM models so Alembic's env.py
sees them via Base.metadata when generating migrations.
"""
from simportal.models.user_session import UserSessionORM
from simportal.models.training_run import TrainingRunORM

__all__ = ["UserSessionORM", "TrainingRunORM"]
