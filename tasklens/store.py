"""Owner-scoped record store on top of the async SQLModel session.

Every query filters on ``owner_id`` inside the SQL statement; there is no
code path that loads another owner's rows and filters afterwards. Driver
failures leave this module as typed errors: ``IntegrityError`` becomes
``ValidationError`` and any other ``SQLAlchemyError`` becomes
``StoreUnavailable``.
"""
from contextlib import asynccontextmanager
from typing import Iterable, Optional, Sequence
import logging

from sqlmodel import select
from sqlalchemy import delete as sqlalchemy_delete
from sqlalchemy import update as sqlalchemy_update
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import selectinload

from .db import async_session
from .errors import StoreUnavailable, ValidationError, ReorderConflict
from .models import Task, Tag, TaskTag, User
from .utils import now_utc, as_utc

logger = logging.getLogger(__name__)

# Order invariant: position, then creation time, then id for full determinism.
TASK_DISPLAY_ORDER = (Task.order.asc(), Task.created_at.asc(), Task.id.asc())


class RecordStore:
    def __init__(self, session_factory=None):
        self._session_factory = session_factory or async_session

    @asynccontextmanager
    async def _session(self):
        async with self._session_factory() as sess:
            try:
                yield sess
            except IntegrityError as e:
                await self._rollback(sess)
                logger.info('record store rejected write: %s', e.orig)
                raise ValidationError('conflicting record') from e
            except SQLAlchemyError as e:
                await self._rollback(sess)
                logger.exception('record store failure')
                raise StoreUnavailable(str(e)) from e

    @staticmethod
    async def _rollback(sess):
        try:
            await sess.rollback()
        except SQLAlchemyError:
            logger.exception('rollback failed after record store error')

    @staticmethod
    def _owned(model, owner_id: int, *criteria):
        stmt = select(model).where(model.owner_id == owner_id)
        for c in criteria:
            stmt = stmt.where(c)
        if model is Task:
            stmt = stmt.options(selectinload(Task.tags))
        return stmt

    async def _load(self, sess, model, owner_id: int, entity_id: int):
        stmt = self._owned(model, owner_id, model.id == entity_id).execution_options(populate_existing=True)
        res = await sess.exec(stmt)
        return res.first()

    async def insert(self, entity, tag_ids: Iterable[int] = ()):
        """Insert a Task or Tag; for tasks, link ``tag_ids`` in the same commit."""
        async with self._session() as sess:
            sess.add(entity)
            await sess.flush()
            if isinstance(entity, Task):
                for tag_id in tag_ids:
                    sess.add(TaskTag(task_id=entity.id, tag_id=tag_id))
            await sess.commit()
            return await self._load(sess, type(entity), entity.owner_id, entity.id)

    async def get(self, model, owner_id: int, entity_id: int):
        async with self._session() as sess:
            return await self._load(sess, model, owner_id, entity_id)

    async def update_by_id(self, model, owner_id: int, entity_id: int, fields: dict, tag_ids: Optional[Sequence[int]] = None):
        """Apply ``fields`` to one owned row. Returns None when the row is not
        the owner's (or does not exist). ``tag_ids`` replaces a task's tag set."""
        async with self._session() as sess:
            obj = await self._load(sess, model, owner_id, entity_id)
            if obj is None:
                return None
            for name, value in fields.items():
                setattr(obj, name, value)
            if hasattr(obj, 'modified_at'):
                stamp = now_utc()
                prev = as_utc(obj.modified_at)
                obj.modified_at = max(stamp, prev) if prev else stamp
            if tag_ids is not None and model is Task:
                await sess.execute(sqlalchemy_delete(TaskTag).where(TaskTag.task_id == entity_id))
                for tag_id in tag_ids:
                    sess.add(TaskTag(task_id=entity_id, tag_id=tag_id))
            sess.add(obj)
            await sess.commit()
            return await self._load(sess, model, owner_id, entity_id)

    async def delete_by_id(self, model, owner_id: int, entity_id: int) -> bool:
        """Delete one owned row and every TaskTag link touching it.

        Returns False when nothing was deleted.
        """
        async with self._session() as sess:
            res = await sess.exec(select(model.id).where(model.id == entity_id).where(model.owner_id == owner_id))
            if res.first() is None:
                return False
            if model is Task:
                await sess.execute(sqlalchemy_delete(TaskTag).where(TaskTag.task_id == entity_id))
            elif model is Tag:
                await sess.execute(sqlalchemy_delete(TaskTag).where(TaskTag.tag_id == entity_id))
            await sess.execute(sqlalchemy_delete(model).where(model.id == entity_id).where(model.owner_id == owner_id))
            await sess.commit()
            return True

    async def find_many(self, model, owner_id: int, *criteria, order_by=None) -> list:
        stmt = self._owned(model, owner_id, *criteria)
        if order_by is None and model is Task:
            order_by = TASK_DISPLAY_ORDER
        if order_by is not None:
            stmt = stmt.order_by(*order_by)
        async with self._session() as sess:
            res = await sess.exec(stmt)
            return list(res.all())

    async def count(self, model, owner_id: int, *criteria) -> int:
        stmt = select(func.count(model.id)).where(model.owner_id == owner_id)
        for c in criteria:
            stmt = stmt.where(c)
        async with self._session() as sess:
            res = await sess.exec(stmt)
            return int(res.one() or 0)

    async def max_task_order(self, owner_id: int) -> Optional[int]:
        async with self._session() as sess:
            res = await sess.exec(select(func.max(Task.order)).where(Task.owner_id == owner_id))
            return res.one()

    async def apply_task_orders(self, owner_id: int, ordered_ids: Sequence[int]) -> None:
        """Assign order = list position to every id in one transaction.

        If any row is rejected (gone, or not the owner's) the whole batch is
        rolled back and ReorderConflict is raised.
        """
        stamp = now_utc()
        async with self._session() as sess:
            for position, task_id in enumerate(ordered_ids):
                res = await sess.execute(
                    sqlalchemy_update(Task)
                    .where(Task.id == task_id)
                    .where(Task.owner_id == owner_id)
                    .values(order=position, modified_at=stamp)
                )
                if res.rowcount != 1:
                    await sess.rollback()
                    raise ReorderConflict(f'task {task_id} rejected from reorder batch')
            await sess.commit()

    async def get_user(self, user_id: int) -> Optional[User]:
        async with self._session() as sess:
            return await sess.get(User, user_id)

    async def update_user(self, user_id: int, fields: dict) -> Optional[User]:
        async with self._session() as sess:
            user = await sess.get(User, user_id)
            if user is None:
                return None
            for name, value in fields.items():
                setattr(user, name, value)
            sess.add(user)
            await sess.commit()
            await sess.refresh(user)
            return user
