from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
import logging
import sys

from fastapi import FastAPI, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict

from . import config
from .auth import authenticate_user, create_access_token, require_login
from .cache import TaggedCache
from .db import init_db
from .errors import TaskLensError, Unauthorized
from .gateway import MutationGateway
from .models import TagRead, TaskRead, User, UserRead
from .reader import TaskReader
from .store import RecordStore

logger = logging.getLogger(__name__)
# Ensure INFO-level messages from the service appear on the console when no
# handlers are configured.
_pkg_logger = logging.getLogger('tasklens')
if not _pkg_logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter('%(asctime)s %(levelname)s:%(name)s: %(message)s')
    handler.setFormatter(formatter)
    _pkg_logger.addHandler(handler)
_pkg_logger.setLevel(getattr(logging, config.LOG_LEVEL, logging.INFO))

store = RecordStore()
cache = TaggedCache()
gateway = MutationGateway(store, cache)
reader = TaskReader(store, cache)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # The server must not start with the test fallback secret.
    if not config.SECRET_KEY or config.SECRET_KEY == "CHANGE_ME_IN_ENV_FOR_TESTS":
        raise RuntimeError("SECRET_KEY not set or insecure fallback in use; set the SECRET_KEY environment variable before starting the server")
    await init_db()
    logger.info('starting server using DATABASE_URL=%s', config.DATABASE_URL)
    yield
    logger.info('shutting down; cache stats %s', cache.stats())


app = FastAPI(lifespan=lifespan)


def _error_body(code: str, detail: str) -> dict:
    return {'ok': False, 'error': code, 'detail': detail}


@app.exception_handler(TaskLensError)
async def tasklens_error_handler(request: Request, exc: TaskLensError):
    if exc.status_code >= 500:
        logger.warning('%s %s failed: %s', request.method, request.url.path, exc.detail)
    headers = {'WWW-Authenticate': 'Bearer'} if isinstance(exc, Unauthorized) else None
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.code, exc.detail), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    parts = []
    for err in exc.errors():
        loc = '.'.join(str(p) for p in err.get('loc', ()) if p != 'body')
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get('msg')))
    return JSONResponse(status_code=400, content=_error_body('validation_error', '; '.join(parts) or 'invalid request'))


# request payloads

class TokenRequest(BaseModel):
    username: str
    password: str


class TaskCreate(BaseModel):
    name: str
    due_date: Optional[datetime] = None
    tag_id: Optional[int] = None
    description: Optional[str] = None


class TaskUpdate(BaseModel):
    model_config = ConfigDict(extra='forbid')

    name: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    is_complete: Optional[bool] = None
    tag_ids: Optional[list[int]] = None


class CompletionRequest(BaseModel):
    is_complete: bool = True


class ReorderRequest(BaseModel):
    ordered_ids: list[int]


class TagCreate(BaseModel):
    name: str
    icon: Optional[str] = None


class TagUpdate(BaseModel):
    model_config = ConfigDict(extra='forbid')

    name: Optional[str] = None
    icon: Optional[str] = None


class ProfileUpdate(BaseModel):
    model_config = ConfigDict(extra='forbid')

    display_name: Optional[str] = None
    timezone: Optional[str] = None


# identity

@app.post('/auth/token')
async def login_for_access_token(req: TokenRequest):
    user = await authenticate_user(req.username, req.password)
    if not user:
        raise Unauthorized('incorrect username or password')
    access_token = create_access_token(data={'sub': user.username})
    return {'access_token': access_token, 'token_type': 'bearer'}


@app.get('/me', response_model=UserRead)
async def get_me(current_user: User = Depends(require_login)):
    return UserRead.from_model(current_user)


@app.patch('/me', response_model=UserRead)
async def patch_me(req: ProfileUpdate, current_user: User = Depends(require_login)):
    fields = req.model_dump(exclude_unset=True)
    result = UserRead.from_model(current_user)
    if 'display_name' in fields:
        result = await gateway.set_display_name(current_user, fields['display_name'])
    if 'timezone' in fields:
        result = await gateway.set_timezone(current_user, fields['timezone'])
    return result


# read path

@app.get('/tasks', response_model=list[TaskRead])
async def list_tasks(current_user: User = Depends(require_login)):
    return list(await reader.all_tasks(current_user))


@app.get('/views/counts')
async def view_counts(tz: Optional[str] = None, current_user: User = Depends(require_login)):
    counts = await reader.counts(current_user, tz)
    return counts.as_dict()


@app.get('/views/tag/{tag_name:path}', response_model=list[TaskRead])
async def view_by_tag(tag_name: str, current_user: User = Depends(require_login)):
    return list(await reader.by_tag(current_user, tag_name))


@app.get('/views/{view_name}', response_model=list[TaskRead])
async def view_bucket(view_name: str, tz: Optional[str] = None, current_user: User = Depends(require_login)):
    """Bucket views: inbox, today, week, overdue (and all)."""
    return list(await reader.view(current_user, view_name, tz=tz))


@app.get('/tags', response_model=list[TagRead])
async def list_tags(current_user: User = Depends(require_login)):
    return list(await reader.tags(current_user))


# write path

@app.post('/tasks', response_model=TaskRead)
async def create_task(req: TaskCreate, current_user: User = Depends(require_login)):
    return await gateway.create_task(
        current_user, req.name, due_date=req.due_date, tag_id=req.tag_id, description=req.description
    )


@app.post('/tasks/reorder')
async def reorder_tasks(req: ReorderRequest, current_user: User = Depends(require_login)):
    await gateway.reorder_tasks(current_user, req.ordered_ids)
    return {'ok': True}


@app.patch('/tasks/{task_id}', response_model=TaskRead)
async def update_task(task_id: int, req: TaskUpdate, current_user: User = Depends(require_login)):
    return await gateway.update_task(current_user, task_id, req.model_dump(exclude_unset=True))


@app.post('/tasks/{task_id}/complete', response_model=TaskRead)
async def complete_task(task_id: int, req: CompletionRequest, current_user: User = Depends(require_login)):
    return await gateway.set_completion(current_user, task_id, req.is_complete)


@app.delete('/tasks/{task_id}')
async def delete_task(task_id: int, current_user: User = Depends(require_login)):
    await gateway.delete_task(current_user, task_id)
    return {'ok': True, 'deleted': task_id}


@app.post('/tags', response_model=TagRead)
async def create_tag(req: TagCreate, current_user: User = Depends(require_login)):
    return await gateway.create_tag(current_user, req.name, icon=req.icon)


@app.patch('/tags/{tag_id}', response_model=TagRead)
async def update_tag(tag_id: int, req: TagUpdate, current_user: User = Depends(require_login)):
    return await gateway.update_tag(current_user, tag_id, req.model_dump(exclude_unset=True))


@app.delete('/tags/{tag_id}')
async def delete_tag(tag_id: int, current_user: User = Depends(require_login)):
    await gateway.delete_tag(current_user, tag_id)
    return {'ok': True, 'deleted': tag_id}
