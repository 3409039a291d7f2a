from datetime import datetime
from typing import Callable, Optional
import logging

from . import views
from .cache import TaggedCache, TASKS_CHANGED, TAGS_CHANGED
from .errors import ValidationError
from .models import Tag, Task, TagRead, TaskRead
from .store import RecordStore
from .utils import now_utc, owner_id_of, resolve_timezone

logger = logging.getLogger(__name__)

VIEW_NAMES = ('all', 'inbox', 'today', 'week', 'overdue', 'tag')


class TaskReader:
    """Read path: store → tagged cache → view aggregator.

    ``tz`` is an IANA name for the caller's local calendar; when omitted the
    owner's stored timezone is used if ``owner`` is a User, else the default.
    """

    def __init__(self, store: RecordStore, cache: TaggedCache, clock: Callable[[], datetime] = now_utc):
        self.store = store
        self.cache = cache
        self._clock = clock

    def _tz(self, owner, tz: Optional[str]):
        return resolve_timezone(tz or getattr(owner, 'timezone', None))

    async def all_tasks(self, owner) -> tuple[TaskRead, ...]:
        owner_id = owner_id_of(owner)

        async def compute():
            rows = await self.store.find_many(Task, owner_id)
            return views.sort_for_display(TaskRead.from_model(t) for t in rows)

        return await self.cache.get(owner_id, 'tasks:all', compute, [TASKS_CHANGED])

    async def inbox(self, owner) -> tuple[TaskRead, ...]:
        owner_id = owner_id_of(owner)

        async def compute():
            return views.inbox(await self.all_tasks(owner_id))

        return await self.cache.get(owner_id, 'tasks:inbox', compute, [TASKS_CHANGED])

    async def due_today(self, owner, tz: Optional[str] = None) -> tuple[TaskRead, ...]:
        return views.due_today(await self.all_tasks(owner), self._clock(), self._tz(owner, tz))

    async def due_this_week(self, owner, tz: Optional[str] = None) -> tuple[TaskRead, ...]:
        return views.due_this_week(await self.all_tasks(owner), self._clock(), self._tz(owner, tz))

    async def overdue(self, owner, tz: Optional[str] = None) -> tuple[TaskRead, ...]:
        return views.overdue(await self.all_tasks(owner), self._clock(), self._tz(owner, tz))

    async def by_tag(self, owner, tag_name: str) -> tuple[TaskRead, ...]:
        return views.by_tag(await self.all_tasks(owner), tag_name)

    async def counts(self, owner, tz: Optional[str] = None) -> views.BucketCounts:
        owner_id = owner_id_of(owner)
        zone = self._tz(owner, tz)
        now = self._clock()
        # the local date is part of the key so a day rollover never serves
        # yesterday's buckets
        key = f'counts:{zone.key}:{now.astimezone(zone).date().isoformat()}'

        async def compute():
            return views.counts(await self.all_tasks(owner_id), now, zone)

        return await self.cache.get(owner_id, key, compute, [TASKS_CHANGED])

    async def tags(self, owner) -> tuple[TagRead, ...]:
        owner_id = owner_id_of(owner)

        async def compute():
            rows = await self.store.find_many(Tag, owner_id, order_by=(Tag.name.asc(), Tag.id.asc()))
            return tuple(TagRead.from_model(t) for t in rows)

        return await self.cache.get(owner_id, 'tags:all', compute, [TAGS_CHANGED])

    async def view(self, owner, name: str, tag_name: Optional[str] = None, tz: Optional[str] = None) -> tuple[TaskRead, ...]:
        if name == 'all':
            return await self.all_tasks(owner)
        if name == 'inbox':
            return await self.inbox(owner)
        if name == 'today':
            return await self.due_today(owner, tz)
        if name == 'week':
            return await self.due_this_week(owner, tz)
        if name == 'overdue':
            return await self.overdue(owner, tz)
        if name == 'tag':
            if not tag_name:
                raise ValidationError('tag view requires a tag name')
            return await self.by_tag(owner, tag_name)
        raise ValidationError(f'unknown view {name!r}')
