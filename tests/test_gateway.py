from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel.ext.asyncio.session import AsyncSession

from tasklens.errors import NotFound, ReorderConflict, StoreUnavailable, Unauthorized, ValidationError
from tasklens.models import Tag, Task
from tasklens.store import RecordStore


async def _names(reader, owner):
    return [t.name for t in await reader.all_tasks(owner)]


@pytest.mark.asyncio
async def test_create_task_appends_to_the_end(gateway, user):
    a = await gateway.create_task(user, 'A')
    b = await gateway.create_task(user, '  B  ')
    c = await gateway.create_task(user.id, 'C')
    assert [a.order, b.order, c.order] == [0, 1, 2]
    assert b.name == 'B'
    assert a.created_at.tzinfo is not None


@pytest.mark.asyncio
async def test_create_task_validation(gateway, user, other_user):
    with pytest.raises(ValidationError):
        await gateway.create_task(user, '   ')
    with pytest.raises(ValidationError):
        await gateway.create_task(user, None)
    with pytest.raises(Unauthorized):
        await gateway.create_task(None, 'anonymous')
    foreign = await gateway.create_tag(other_user, 'work')
    with pytest.raises(NotFound):
        await gateway.create_task(user, 'A', tag_id=foreign.id)


@pytest.mark.asyncio
async def test_create_task_with_tag_and_due_date(gateway, reader, user, now):
    tag = await gateway.create_tag(user, 'home', icon='house')
    task = await gateway.create_task(user, 'Water plants', due_date=now, tag_id=tag.id)
    assert [t.name for t in task.tags] == ['home']
    assert task.due_date == now
    assert await reader.due_today(user) == (task,)


@pytest.mark.asyncio
async def test_update_task_fields(gateway, user):
    task = await gateway.create_task(user, 'A')
    updated = await gateway.update_task(user, task.id, {'name': 'A2', 'description': 'more'})
    assert updated.name == 'A2' and updated.description == 'more'
    assert updated.modified_at >= task.modified_at
    with pytest.raises(ValidationError):
        await gateway.update_task(user, task.id, {'priority': 5})
    with pytest.raises(ValidationError):
        await gateway.update_task(user, task.id, {'name': ''})


@pytest.mark.asyncio
async def test_update_replaces_tag_set(gateway, user):
    home = await gateway.create_tag(user, 'home')
    work = await gateway.create_tag(user, 'work')
    task = await gateway.create_task(user, 'A', tag_id=home.id)
    updated = await gateway.update_task(user, task.id, {'tag_ids': [work.id, home.id]})
    assert [t.name for t in updated.tags] == ['home', 'work']
    cleared = await gateway.update_task(user, task.id, {'tag_ids': []})
    assert cleared.tags == ()


@pytest.mark.asyncio
async def test_foreign_task_is_not_found(gateway, user, other_user):
    theirs = await gateway.create_task(other_user, 'secret')
    with pytest.raises(NotFound):
        await gateway.update_task(user, theirs.id, {'name': 'mine now'})
    with pytest.raises(NotFound):
        await gateway.set_completion(user, theirs.id, True)
    with pytest.raises(NotFound):
        await gateway.update_task(user, 9999, {'name': 'x'})


@pytest.mark.asyncio
async def test_readers_only_see_their_own_rows(gateway, reader, user, other_user):
    await gateway.create_task(user, 'mine')
    await gateway.create_task(other_user, 'theirs')
    assert await _names(reader, user) == ['mine']
    assert await _names(reader, other_user) == ['theirs']


@pytest.mark.asyncio
async def test_delete_task_is_idempotent(gateway, reader, store, user):
    task = await gateway.create_task(user, 'A')
    assert await gateway.delete_task(user, task.id) is True
    assert await gateway.delete_task(user, task.id) is True
    assert await reader.all_tasks(user) == ()
    assert await store.get(Task, user.id, task.id) is None


@pytest.mark.asyncio
async def test_deleting_an_absent_task_does_not_invalidate(gateway, cache, user):
    await gateway.delete_task(user, 12345)
    assert cache.stats()['invalidations'] == 0


@pytest.mark.asyncio
async def test_deleting_a_foreign_task_leaves_it_alone(gateway, reader, user, other_user):
    theirs = await gateway.create_task(other_user, 'secret')
    assert await gateway.delete_task(user, theirs.id) is True
    assert await _names(reader, other_user) == ['secret']


@pytest.mark.asyncio
async def test_reorder_full_permutation(gateway, reader, store, user):
    a = await gateway.create_task(user, 'A')
    b = await gateway.create_task(user, 'B')
    c = await gateway.create_task(user, 'C')
    await reader.all_tasks(user)
    await gateway.reorder_tasks(user, [c.id, a.id, b.id])
    rows = await store.find_many(Task, user.id)
    assert [r.name for r in rows] == ['C', 'A', 'B']
    assert [r.order for r in rows] == [0, 1, 2]
    assert await _names(reader, user) == ['C', 'A', 'B']


@pytest.mark.asyncio
async def test_reorder_rejects_duplicates_and_foreign_ids(gateway, reader, user, other_user):
    a = await gateway.create_task(user, 'A')
    b = await gateway.create_task(user, 'B')
    theirs = await gateway.create_task(other_user, 'X')
    with pytest.raises(ValidationError):
        await gateway.reorder_tasks(user, [a.id, a.id, b.id])
    with pytest.raises(NotFound):
        await gateway.reorder_tasks(user, [b.id, theirs.id, a.id])
    assert await _names(reader, user) == ['A', 'B']
    assert await _names(reader, other_user) == ['X']


@pytest.mark.asyncio
async def test_reorder_batch_is_all_or_nothing(gateway, store, user):
    a = await gateway.create_task(user, 'A')
    b = await gateway.create_task(user, 'B')
    with pytest.raises(ReorderConflict):
        await store.apply_task_orders(user.id, [b.id, a.id, 424242])
    rows = await store.find_many(Task, user.id)
    assert [(r.name, r.order) for r in rows] == [('A', 0), ('B', 1)]


@pytest.mark.asyncio
async def test_tag_names_are_unique_per_owner(gateway, user, other_user):
    await gateway.create_tag(user, 'work')
    with pytest.raises(ValidationError):
        await gateway.create_tag(user, ' work ')
    with pytest.raises(ValidationError):
        await gateway.create_tag(user, '')
    # another owner may reuse the name
    theirs = await gateway.create_tag(other_user, 'work')
    assert theirs.name == 'work'


@pytest.mark.asyncio
async def test_store_turns_integrity_errors_into_validation_errors(store, user):
    await store.insert(Tag(owner_id=user.id, name='dup'))
    with pytest.raises(ValidationError):
        await store.insert(Tag(owner_id=user.id, name='dup'))


@pytest.mark.asyncio
async def test_store_turns_driver_failures_into_store_unavailable(tmp_path):
    engine = create_async_engine(
        'sqlite+aiosqlite:///' + str(tmp_path / 'missing' / 'nowhere.db'), poolclass=NullPool
    )
    broken = RecordStore(sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))
    try:
        with pytest.raises(StoreUnavailable) as exc:
            await broken.find_many(Task, 1)
        assert exc.value.retryable
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_update_tag_renames_and_refreshes_task_views(gateway, reader, user):
    tag = await gateway.create_tag(user, 'errands')
    await gateway.create_task(user, 'Buy milk', tag_id=tag.id)
    assert len(await reader.by_tag(user, 'errands')) == 1
    other = await gateway.create_tag(user, 'shopping')
    with pytest.raises(ValidationError):
        await gateway.update_tag(user, tag.id, {'name': 'shopping'})
    await gateway.delete_tag(user, other.id)
    renamed = await gateway.update_tag(user, tag.id, {'name': 'shopping', 'icon': 'cart'})
    assert renamed.icon == 'cart'
    assert await reader.by_tag(user, 'errands') == ()
    assert [t.name for t in await reader.by_tag(user, 'shopping')] == ['Buy milk']
    assert [t.name for t in await reader.tags(user)] == ['shopping']


@pytest.mark.asyncio
async def test_deleting_a_tag_removes_it_from_every_task(gateway, reader, user):
    tag = await gateway.create_tag(user, 'home')
    await gateway.create_task(user, 'A', tag_id=tag.id)
    await gateway.create_task(user, 'B', tag_id=tag.id)
    assert len(await reader.by_tag(user, 'home')) == 2
    assert await gateway.delete_tag(user, tag.id) is True
    assert await gateway.delete_tag(user, tag.id) is True
    assert await reader.by_tag(user, 'home') == ()
    assert all(t.tags == () for t in await reader.all_tasks(user))
    assert await reader.tags(user) == ()


@pytest.mark.asyncio
async def test_foreign_tag_is_not_found(gateway, user, other_user):
    theirs = await gateway.create_tag(other_user, 'private')
    with pytest.raises(NotFound):
        await gateway.update_tag(user, theirs.id, {'name': 'stolen'})
    with pytest.raises(ValidationError):
        await gateway.update_tag(user, theirs.id, {'colour': 'red'})


@pytest.mark.asyncio
async def test_reads_after_a_mutation_are_fresh(gateway, reader, user, now):
    await gateway.create_task(user, 'A')
    first = await reader.all_tasks(user)
    counts = await reader.counts(user)
    assert counts.inbox == 1
    b = await gateway.create_task(user, 'B', due_date=now)
    assert [t.name for t in await reader.all_tasks(user)] == ['A', 'B']
    assert (await reader.counts(user)).due_today == 1
    await gateway.set_completion(user, b.id, True)
    assert (await reader.counts(user)).due_today == 0
    assert first[0].name == "A" and len(first) == 1


@pytest.mark.asyncio
async def test_failed_write_leaves_cache_untouched(gateway, reader, cache, store, user, monkeypatch):
    task = await gateway.create_task(user, 'A')
    cached = await reader.all_tasks(user)
    before = cache.stats()

    async def store_down(*args, **kwargs):
        raise StoreUnavailable('database is locked')

    monkeypatch.setattr(store, 'update_by_id', store_down)
    with pytest.raises(StoreUnavailable):
        await gateway.update_task(user, task.id, {'name': 'B'})
    assert cache.stats()['invalidations'] == before['invalidations']
    assert cache.peek(user.id, 'tasks:all') is cached
    assert await reader.all_tasks(user) is cached
    assert cached[0].name == 'A'


@pytest.mark.asyncio
async def test_mutations_invalidate_only_their_owner(gateway, reader, cache, user, other_user):
    await gateway.create_task(other_user, 'X')
    theirs = await reader.all_tasks(other_user)
    await gateway.create_task(user, 'A')
    assert cache.peek(other_user.id, 'tasks:all') is theirs


@pytest.mark.asyncio
async def test_reader_view_dispatch(gateway, reader, user, now):
    overdue = await gateway.create_task(user, 'late', due_date=now - timedelta(days=2))
    inbox = await gateway.create_task(user, 'someday')
    assert await reader.view(user, 'overdue') == (overdue,)
    assert await reader.view(user, 'inbox') == (inbox,)
    assert await reader.view(user, 'week') == ()
    assert len(await reader.view(user, 'all')) == 2
    with pytest.raises(ValidationError):
        await reader.view(user, 'tag')
    with pytest.raises(ValidationError):
        await reader.view(user, 'someday')


@pytest.mark.asyncio
async def test_unknown_timezone_falls_back(gateway, reader, user, now):
    task = await gateway.create_task(user, 'now', due_date=now)
    assert await reader.due_today(user, tz='Not/AZone') == (task,)


@pytest.mark.asyncio
async def test_counts_follow_the_owners_timezone(gateway, reader, store, user, now):
    # at 15:00 UTC it is already tomorrow in Kiritimati (UTC+14), so a task
    # due 09:00 UTC today is overdue there
    await gateway.create_task(user, 'morning', due_date=now.replace(hour=9))
    assert (await reader.counts(user)).due_today == 1
    updated = await gateway.set_timezone(user, 'Pacific/Kiritimati')
    assert updated.timezone == 'Pacific/Kiritimati'
    refreshed = await store.get_user(user.id)
    counts = await reader.counts(refreshed)
    assert counts.due_today == 0
    assert counts.overdue == 1


@pytest.mark.asyncio
async def test_profile_updates(gateway, user):
    renamed = await gateway.set_display_name(user, '  Alice A.  ')
    assert renamed.display_name == 'Alice A.'
    with pytest.raises(ValidationError):
        await gateway.set_display_name(user, ' ')
    with pytest.raises(ValidationError):
        await gateway.set_timezone(user, 'Mars/Olympus_Mons')
    cleared = await gateway.set_timezone(user, None)
    assert cleared.timezone is None

