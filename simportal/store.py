"""
store.py — Keyed-store facade for simportal.

The Session Store and the Training Progress Engine never touch SQLAlchemy
sessions directly; they go through a KeyedStore constructed once at startup
and injected into their constructors.

Operations (each is its own short transaction on a single logical row):
  find_one(model, *filters, order_by=...)   → StoreResult[row | None]
  find_all(model, *filters, order_by=...)   → StoreResult[list[row]]
  insert(row)                               → StoreResult[row]   (ConflictError on unique violation)
  update_where(model, filters, patch)       → StoreResult[int]   (rows affected)
  count_where(model, *filters)              → StoreResult[int]

Nothing here raises for infrastructure failures. Every call returns a
StoreResult and the caller decides, explicitly, whether to degrade or to
propagate (StoreResult.unwrap() raises StoreUnavailable).

Rows come back detached (expire_on_commit=False) — callers convert them to
Pydantic domain objects before handing them further up.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Generic, Iterable, Mapping, Optional, Sequence, Type, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from simportal.errors import StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

class StoreError(Exception):
    """Transient infrastructure failure talking to the persistence layer."""


class ConflictError(StoreError):
    """The store rejected an insert because of a unique violation."""


@dataclass(frozen=True)
class StoreResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[StoreError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def conflict(self) -> bool:
        return isinstance(self.error, ConflictError)

    def unwrap(self) -> T:
        """Return the value or raise StoreUnavailable (ConflictError is re-raised as-is)."""
        if self.error is None:
            return self.value  # type: ignore[return-value]
        if isinstance(self.error, ConflictError):
            raise self.error
        raise StoreUnavailable() from self.error


# ---------------------------------------------------------------------------
# KeyedStore
# ---------------------------------------------------------------------------

class KeyedStore:
    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        timeout_seconds: Optional[float] = 5.0,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._timeout = timeout_seconds

    async def _run(self, op_name: str, coro) -> StoreResult:
        try:
            value = await asyncio.wait_for(coro, timeout=self._timeout)
        except IntegrityError as exc:
            logger.info("Store %s rejected by unique constraint", op_name)
            return StoreResult(error=ConflictError(str(exc.orig)))
        except asyncio.TimeoutError:
            logger.warning("Store %s timed out after %ss", op_name, self._timeout)
            return StoreResult(error=StoreError(f"{op_name} timed out"))
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("Store %s failed: %s", op_name, type(exc).__name__)
            return StoreResult(error=StoreError(str(exc)))
        return StoreResult(value=value)

    # -- reads ---------------------------------------------------------------

    async def find_one(
        self,
        model: Type[M],
        *filters: Any,
        order_by: Sequence[Any] = (),
    ) -> StoreResult[Optional[M]]:
        async def _op() -> Optional[M]:
            async with self._sessionmaker() as session:
                stmt = select(model).where(*filters).order_by(*order_by).limit(1)
                result = await session.execute(stmt)
                return result.scalars().first()

        return await self._run(f"find_one({model.__name__})", _op())

    async def find_all(
        self,
        model: Type[M],
        *filters: Any,
        order_by: Sequence[Any] = (),
    ) -> StoreResult[list]:
        async def _op() -> list:
            async with self._sessionmaker() as session:
                stmt = select(model).where(*filters).order_by(*order_by)
                result = await session.execute(stmt)
                return list(result.scalars().all())

        return await self._run(f"find_all({model.__name__})", _op())

    async def count_where(self, model: Type[M], *filters: Any) -> StoreResult[int]:
        async def _op() -> int:
            async with self._sessionmaker() as session:
                stmt = select(func.count()).select_from(model).where(*filters)
                result = await session.execute(stmt)
                return int(result.scalar_one())

        return await self._run(f"count_where({model.__name__})", _op())

    # -- writes --------------------------------------------------------------

    async def insert(self, row: M) -> StoreResult[M]:
        async def _op() -> M:
            async with self._sessionmaker() as session:
                async with session.begin():
                    session.add(row)
                return row

        return await self._run(f"insert({type(row).__name__})", _op())

    async def update_where(
        self,
        model: Type[M],
        filters: Iterable[Any],
        patch: Mapping[str, Any],
    ) -> StoreResult[int]:
        async def _op() -> int:
            async with self._sessionmaker() as session:
                async with session.begin():
                    stmt = (
                        update(model)
                        .where(*filters)
                        .values(**patch)
                        .execution_options(synchronize_session=False)
                    )
                    result = await session.execute(stmt)
                return int(result.rowcount or 0)

        return await self._run(f"update_where({model.__name__})", _op())
