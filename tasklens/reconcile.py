"""Client-side copy of one displayed task list.

A ``TaskListSession`` keeps the ordered tasks of a single view, the selected
task and the "show completed" filter. Edits are applied locally first and
then confirmed through a backend; snapshots from the backend replace local
state outright rather than being merged field by field.

State moves ``CLEAN -> OPTIMISTIC -> CLEAN | REVERTED``.
"""
from enum import Enum
from typing import Optional, Sequence
from urllib.parse import quote
import logging

import httpx

from .errors import NotFound, StoreUnavailable, TaskLensError, ValidationError, error_from_payload
from .models import TaskRead

logger = logging.getLogger(__name__)


class ViewState(str, Enum):
    CLEAN = 'clean'
    OPTIMISTIC = 'optimistic'
    REVERTED = 'reverted'


class GatewayBackend:
    """In-process backend bound to one owner."""

    def __init__(self, gateway, reader, owner):
        self.gateway = gateway
        self.reader = reader
        self.owner = owner

    async def load(self, view: str, tag_name: Optional[str] = None, tz: Optional[str] = None) -> list[TaskRead]:
        return list(await self.reader.view(self.owner, view, tag_name=tag_name, tz=tz))

    async def set_completion(self, task_id: int, is_complete: bool) -> TaskRead:
        return await self.gateway.set_completion(self.owner, task_id, is_complete)

    async def delete_task(self, task_id: int) -> None:
        await self.gateway.delete_task(self.owner, task_id)

    async def reorder_tasks(self, ordered_ids: Sequence[int]) -> None:
        await self.gateway.reorder_tasks(self.owner, ordered_ids)


class HttpBackend:
    """Backend talking to the JSON API through an ``httpx.AsyncClient``.

    The client is expected to carry the base URL and the bearer token.
    Error bodies are turned back into the typed errors of ``tasklens.errors``;
    transport failures surface as ``StoreUnavailable``.
    """

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def _request(self, method: str, url: str, **kwargs):
        try:
            resp = await self.client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            logger.warning('%s %s transport failure: %s', method, url, e)
            raise StoreUnavailable(f'transport failure: {e}') from e
        if resp.status_code >= 400:
            try:
                payload = resp.json()
            except ValueError:
                payload = None
            raise error_from_payload(payload if isinstance(payload, dict) else None, resp.status_code)
        return resp.json()

    async def load(self, view: str, tag_name: Optional[str] = None, tz: Optional[str] = None) -> list[TaskRead]:
        params = {'tz': tz} if tz else None
        if view == 'all':
            url = '/tasks'
        elif view == 'tag':
            url = f'/views/tag/{quote(tag_name or "", safe="")}'
        else:
            url = f'/views/{view}'
        data = await self._request('GET', url, params=params)
        return [TaskRead.model_validate(item) for item in data]

    async def set_completion(self, task_id: int, is_complete: bool) -> TaskRead:
        data = await self._request('POST', f'/tasks/{task_id}/complete', json={'is_complete': is_complete})
        return TaskRead.model_validate(data)

    async def delete_task(self, task_id: int) -> None:
        await self._request('DELETE', f'/tasks/{task_id}')

    async def reorder_tasks(self, ordered_ids: Sequence[int]) -> None:
        await self._request('POST', '/tasks/reorder', json={'ordered_ids': list(ordered_ids)})


class TaskListSession:
    def __init__(self, backend, view: str = 'all', tag_name: Optional[str] = None, tz: Optional[str] = None):
        self.backend = backend
        self.view = view
        self.tag_name = tag_name
        self.tz = tz
        self.tasks: list[TaskRead] = []
        self.selected_id: Optional[int] = None
        self.show_completed = True
        self.state = ViewState.CLEAN
        self.last_error: Optional[TaskLensError] = None
        # task id -> completion flag not yet confirmed by the backend
        self._pending: dict[int, bool] = {}
        self._drag_origin: Optional[list[TaskRead]] = None
        self._drag_id: Optional[int] = None

    def _index(self, task_id: int) -> int:
        for i, t in enumerate(self.tasks):
            if t.id == task_id:
                return i
        raise NotFound(f'task {task_id} is not in this view')

    def _replace(self, task: TaskRead) -> None:
        for i, t in enumerate(self.tasks):
            if t.id == task.id:
                self.tasks[i] = task
                return

    @property
    def dragging(self) -> bool:
        return self._drag_origin is not None

    @property
    def selected(self) -> Optional[TaskRead]:
        return next((t for t in self.tasks if t.id == self.selected_id), None)

    async def refresh(self) -> list[TaskRead]:
        """Replace local state with a fresh snapshot of the view.

        Completion edits still in flight are redriven over the snapshot so a
        read that raced the write does not flicker the task back.
        """
        snapshot = await self.backend.load(self.view, tag_name=self.tag_name, tz=self.tz)
        tasks = list(snapshot)
        for i, t in enumerate(tasks):
            if t.id in self._pending:
                tasks[i] = t.model_copy(update={'is_complete': self._pending[t.id]})
        self.tasks = tasks
        if self._drag_origin is not None:
            logger.debug('snapshot replaced an in-progress drag; drag dropped')
            self._drag_origin = None
            self._drag_id = None
        if self.selected_id is not None and all(t.id != self.selected_id for t in tasks):
            self.selected_id = None
        self.state = ViewState.OPTIMISTIC if self._pending else ViewState.CLEAN
        return self.visible()

    async def _revalidate(self) -> None:
        """Refresh after a confirmed write.

        The write already succeeded, so a failed read is recorded and the
        confirmed local state stands until the next ``refresh()``.
        """
        try:
            await self.refresh()
        except TaskLensError as e:
            self.last_error = e
            self.state = ViewState.OPTIMISTIC if self._pending else ViewState.CLEAN
            logger.warning('revalidation of %s view failed after a confirmed write: %s', self.view, e.code)

    async def toggle_completion(self, task_id: int, is_complete: Optional[bool] = None) -> TaskRead:
        idx = self._index(task_id)
        previous = self.tasks[idx].is_complete
        flag = (not previous) if is_complete is None else bool(is_complete)
        self.tasks[idx] = self.tasks[idx].model_copy(update={'is_complete': flag})
        self._pending[task_id] = flag
        self.state = ViewState.OPTIMISTIC
        try:
            confirmed = await self.backend.set_completion(task_id, flag)
        except TaskLensError as e:
            self._pending.pop(task_id, None)
            for i, t in enumerate(self.tasks):
                if t.id == task_id:
                    self.tasks[i] = t.model_copy(update={'is_complete': previous})
            self.state = ViewState.REVERTED
            self.last_error = e
            logger.info('completion of task %s reverted: %s', task_id, e.code)
            raise
        self._pending.pop(task_id, None)
        self._replace(confirmed)
        await self._revalidate()
        return confirmed

    async def delete(self, task_id: int) -> None:
        """Remove locally, then confirm.

        A failed delete is not reinserted; the session stays OPTIMISTIC with
        the error recorded until the next ``refresh()``.
        """
        self.tasks = [t for t in self.tasks if t.id != task_id]
        if self.selected_id == task_id:
            self.selected_id = None
        self.state = ViewState.OPTIMISTIC
        try:
            await self.backend.delete_task(task_id)
        except TaskLensError as e:
            self.last_error = e
            logger.info('delete of task %s failed: %s', task_id, e.code)
            raise
        await self._revalidate()

    # drag and drop

    def begin_drag(self, task_id: int) -> None:
        self._index(task_id)
        self._drag_origin = list(self.tasks)
        self._drag_id = task_id

    def hover(self, drag_index: int, hover_index: int) -> list[TaskRead]:
        """Move the visible item at ``drag_index`` to ``hover_index``.

        Indices address the visible sequence; hidden (completed) tasks keep
        their slots in the full list. No backend call. ``drag_index`` must
        point at the task passed to ``begin_drag``.
        """
        if self._drag_origin is None:
            raise ValidationError('hover without begin_drag')
        visible = self.visible()
        if not 0 <= drag_index < len(visible):
            raise IndexError(drag_index)
        if visible[drag_index].id != self._drag_id:
            raise ValidationError(f'index {drag_index} is not the dragged task')
        hover_index = max(0, min(hover_index, len(visible) - 1))
        item = visible.pop(drag_index)
        visible.insert(hover_index, item)
        shown = {t.id for t in visible}
        moved = iter(visible)
        self.tasks = [next(moved) if t.id in shown else t for t in self.tasks]
        return self.visible()

    async def drop(self) -> None:
        """Persist the local order with a single reorder call."""
        if self._drag_origin is None:
            return
        origin = self._drag_origin
        self._drag_origin = None
        self._drag_id = None
        if [t.id for t in origin] == [t.id for t in self.tasks]:
            return
        self.state = ViewState.OPTIMISTIC
        try:
            await self.backend.reorder_tasks([t.id for t in self.tasks])
        except TaskLensError as e:
            self.tasks = origin
            self.state = ViewState.REVERTED
            self.last_error = e
            logger.info('reorder reverted: %s', e.code)
            raise
        await self._revalidate()

    def cancel_drag(self) -> None:
        if self._drag_origin is not None:
            self.tasks = self._drag_origin
        self._drag_origin = None
        self._drag_id = None

    # display

    def set_show_completed(self, flag: bool) -> None:
        self.show_completed = bool(flag)

    def visible(self) -> list[TaskRead]:
        if self.show_completed:
            return list(self.tasks)
        return [t for t in self.tasks if not t.is_complete]

    def select(self, task_id: Optional[int]) -> Optional[int]:
        """Select a task; selecting the selected task clears the selection."""
        self.selected_id = None if task_id is None or task_id == self.selected_id else task_id
        return self.selected_id
