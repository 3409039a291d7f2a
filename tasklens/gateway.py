"""Mutation gateway: the only write path for tasks and tags.

Every operation takes the owner explicitly. A successful mutation performs
its store write first and invalidates cache tags second; a failed write
raises and never reaches the invalidation step.
"""
from datetime import datetime
from typing import Iterable, Optional, Sequence
import logging

from .cache import TaggedCache, TASKS_CHANGED, TAGS_CHANGED
from .errors import NotFound, Unauthorized, ValidationError
from .models import Tag, Task, TagRead, TaskRead, UserRead
from .store import RecordStore
from .utils import as_utc, clean_name, is_known_timezone, owner_id_of

logger = logging.getLogger(__name__)

TASK_FIELDS = frozenset({'name', 'description', 'due_date', 'is_complete', 'tag_ids'})
TAG_FIELDS = frozenset({'name', 'icon'})


def _valid_name(value, what: str) -> str:
    name = clean_name(value)
    if not name:
        raise ValidationError(f'{what} name must not be empty')
    return name


def _due(value) -> Optional[datetime]:
    if value is None:
        return None
    if not isinstance(value, datetime):
        raise ValidationError('due_date must be a datetime')
    return as_utc(value)


class MutationGateway:
    def __init__(self, store: RecordStore, cache: TaggedCache):
        self.store = store
        self.cache = cache

    def _invalidate(self, owner_id: int, *tags: str) -> None:
        for tag in tags:
            self.cache.invalidate(tag, owner_id=owner_id)

    async def _check_tags(self, owner_id: int, tag_ids: Iterable[int]) -> list[int]:
        ids = list(dict.fromkeys(tag_ids))
        if ids and await self.store.count(Tag, owner_id, Tag.id.in_(ids)) != len(ids):
            raise NotFound('tag not found')
        return ids

    async def _check_tag_name(self, owner_id: int, name: str, exclude_id: Optional[int] = None) -> None:
        criteria = [Tag.name == name]
        if exclude_id is not None:
            criteria.append(Tag.id != exclude_id)
        if await self.store.count(Tag, owner_id, *criteria):
            raise ValidationError(f'tag {name!r} already exists')

    # tasks

    async def create_task(self, owner, name, due_date=None, tag_id: Optional[int] = None, description: Optional[str] = None) -> TaskRead:
        owner_id = owner_id_of(owner)
        clean = _valid_name(name, 'task')
        tag_ids = await self._check_tags(owner_id, [tag_id] if tag_id is not None else [])
        top = await self.store.max_task_order(owner_id)
        task = Task(
            owner_id=owner_id,
            name=clean,
            description=description,
            due_date=_due(due_date),
            order=0 if top is None else top + 1,
        )
        created = await self.store.insert(task, tag_ids=tag_ids)
        self._invalidate(owner_id, TASKS_CHANGED)
        logger.info('created task id=%s owner=%s order=%s', created.id, owner_id, created.order)
        return TaskRead.from_model(created)

    async def update_task(self, owner, task_id: int, fields: dict) -> TaskRead:
        owner_id = owner_id_of(owner)
        unknown = set(fields) - TASK_FIELDS
        if unknown:
            raise ValidationError(f'unknown task fields: {", ".join(sorted(unknown))}')
        values = {}
        if 'name' in fields:
            values['name'] = _valid_name(fields['name'], 'task')
        if 'description' in fields:
            values['description'] = fields['description']
        if 'due_date' in fields:
            values['due_date'] = _due(fields['due_date'])
        if 'is_complete' in fields:
            values['is_complete'] = bool(fields['is_complete'])
        tag_ids = None
        if 'tag_ids' in fields:
            tag_ids = await self._check_tags(owner_id, fields['tag_ids'] or [])
        updated = await self.store.update_by_id(Task, owner_id, task_id, values, tag_ids=tag_ids)
        if updated is None:
            raise NotFound(f'task {task_id} not found')
        self._invalidate(owner_id, TASKS_CHANGED)
        logger.info('updated task id=%s owner=%s fields=%s', task_id, owner_id, sorted(fields))
        return TaskRead.from_model(updated)

    async def set_completion(self, owner, task_id: int, is_complete: bool) -> TaskRead:
        return await self.update_task(owner, task_id, {'is_complete': bool(is_complete)})

    async def delete_task(self, owner, task_id: int) -> bool:
        owner_id = owner_id_of(owner)
        if await self.store.delete_by_id(Task, owner_id, task_id):
            self._invalidate(owner_id, TASKS_CHANGED)
            logger.info('deleted task id=%s owner=%s', task_id, owner_id)
        return True

    async def reorder_tasks(self, owner, ordered_ids: Sequence[int]) -> None:
        owner_id = owner_id_of(owner)
        ids = [int(i) for i in ordered_ids]
        if len(set(ids)) != len(ids):
            raise ValidationError('reorder list contains duplicate ids')
        if not ids:
            return
        if await self.store.count(Task, owner_id, Task.id.in_(ids)) != len(ids):
            raise NotFound('reorder list references unknown tasks')
        await self.store.apply_task_orders(owner_id, ids)
        self._invalidate(owner_id, TASKS_CHANGED)
        logger.info('reordered %d tasks owner=%s', len(ids), owner_id)

    # tags

    async def create_tag(self, owner, name, icon: Optional[str] = None) -> TagRead:
        owner_id = owner_id_of(owner)
        clean = _valid_name(name, 'tag')
        await self._check_tag_name(owner_id, clean)
        created = await self.store.insert(Tag(owner_id=owner_id, name=clean, icon=icon))
        self._invalidate(owner_id, TAGS_CHANGED)
        logger.info('created tag id=%s owner=%s name=%s', created.id, owner_id, clean)
        return TagRead.from_model(created)

    async def update_tag(self, owner, tag_id: int, fields: dict) -> TagRead:
        owner_id = owner_id_of(owner)
        unknown = set(fields) - TAG_FIELDS
        if unknown:
            raise ValidationError(f'unknown tag fields: {", ".join(sorted(unknown))}')
        values = {}
        if 'name' in fields:
            values['name'] = _valid_name(fields['name'], 'tag')
            await self._check_tag_name(owner_id, values['name'], exclude_id=tag_id)
        if 'icon' in fields:
            values['icon'] = fields['icon']
        updated = await self.store.update_by_id(Tag, owner_id, tag_id, values)
        if updated is None:
            raise NotFound(f'tag {tag_id} not found')
        # task views render tag names, and by-tag views key on them
        self._invalidate(owner_id, TAGS_CHANGED, TASKS_CHANGED)
        logger.info('updated tag id=%s owner=%s fields=%s', tag_id, owner_id, sorted(fields))
        return TagRead.from_model(updated)

    async def delete_tag(self, owner, tag_id: int) -> bool:
        owner_id = owner_id_of(owner)
        if await self.store.delete_by_id(Tag, owner_id, tag_id):
            self._invalidate(owner_id, TAGS_CHANGED, TASKS_CHANGED)
            logger.info('deleted tag id=%s owner=%s', tag_id, owner_id)
        return True

    # profile

    async def _update_user(self, owner_id: int, values: dict) -> UserRead:
        user = await self.store.update_user(owner_id, values)
        if user is None:
            raise Unauthorized('caller identity no longer exists')
        return UserRead.from_model(user)

    async def set_display_name(self, owner, name) -> UserRead:
        owner_id = owner_id_of(owner)
        return await self._update_user(owner_id, {'display_name': _valid_name(name, 'display')})

    async def set_timezone(self, owner, tz_name: Optional[str]) -> UserRead:
        """Set the owner's local calendar. Changing it moves day buckets, so
        task views are invalidated."""
        owner_id = owner_id_of(owner)
        if tz_name and not is_known_timezone(tz_name):
            raise ValidationError(f'unknown timezone {tz_name!r}')
        user = await self._update_user(owner_id, {'timezone': tz_name or None})
        self._invalidate(owner_id, TASKS_CHANGED)
        return user
