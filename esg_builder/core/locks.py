import asyncio
import logging
import weakref
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Dict, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ConcurrentModification, PartialMutationFailure

logger = logging.getLogger(__name__)


class LeverLocks:
    """One asyncio lock per lever forest and event loop, created on first use."""

    def __init__(self):
        self._locks = weakref.WeakKeyDictionary()

    def get(self, lever_id: Optional[int]) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        per_loop: Dict[Optional[int], asyncio.Lock] = self._locks.setdefault(loop, {})
        lock = per_loop.get(lever_id)
        if lock is None:
            lock = asyncio.Lock()
            per_loop[lever_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, lever_ids: Iterable[Optional[int]]):
        # Sorted acquisition so two operations spanning the same levers cannot deadlock.
        ordered = sorted(set(lever_ids), key=lambda x: (x is None, x or 0))
        async with AsyncExitStack() as stack:
            for lever_id in ordered:
                await stack.enter_async_context(self.get(lever_id))
            yield


lever_locks = LeverLocks()


@asynccontextmanager
async def atomic_mutation(
    session: AsyncSession, lever_ids: Iterable[Optional[int]], operation: str
):
    """Serialize structural edits per lever and commit them as one transaction.

    The commit happens while the locks are still held. Any database error
    rolls the whole transaction back; nothing partial is ever committed.
    """
    async with lever_locks.hold(lever_ids):
        try:
            yield
            await session.commit()
        except StaleDataError as exc:
            await session.rollback()
            logger.warning("%s rejected: concurrent modification (%s)", operation, exc)
            raise ConcurrentModification(
                f"{operation} failed: the variable was modified by another request"
            ) from exc
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.exception("%s failed, transaction rolled back", operation)
            raise PartialMutationFailure(
                f"{operation} failed and was rolled back: {exc.__class__.__name__}"
            ) from exc
        except Exception:
            await session.rollback()
            raise
