from typing import List, Optional
from datetime import datetime
from .utils import now_utc, as_utc
from pydantic import BaseModel, ConfigDict
from sqlmodel import SQLModel, Field, Relationship
from sqlalchemy import UniqueConstraint


class TaskTag(SQLModel, table=True):
    task_id: Optional[int] = Field(default=None, foreign_key="task.id", primary_key=True)
    tag_id: Optional[int] = Field(default=None, foreign_key="tag.id", primary_key=True)


class User(SQLModel, table=True):
    """Owner identity: password stored as a passlib hash."""
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, sa_column_kwargs={"unique": True})
    password_hash: str
    display_name: Optional[str] = None
    # IANA timezone name used as this user's local calendar for day buckets
    timezone: Optional[str] = None


class Tag(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: int = Field(foreign_key="user.id", index=True)
    name: str
    icon: Optional[str] = None

    __table_args__ = (UniqueConstraint('owner_id', 'name', name='uq_tag_owner_name'),)


class Task(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: int = Field(foreign_key="user.id", index=True)
    name: str
    description: Optional[str] = None
    due_date: Optional[datetime] = Field(default=None, index=True)
    is_complete: bool = Field(default=False, index=True)
    # Manual list position. Not unique at rest; reads tie-break on created_at.
    order: int = Field(default=0, index=True)
    created_at: datetime | None = Field(default_factory=now_utc)
    modified_at: datetime | None = Field(default_factory=now_utc)

    tags: List[Tag] = Relationship(link_model=TaskTag)


class TagRead(BaseModel):
    """Immutable tag snapshot handed to readers and the cache."""
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    icon: Optional[str] = None

    @classmethod
    def from_model(cls, tag: Tag) -> "TagRead":
        return cls(id=tag.id, name=tag.name, icon=tag.icon)


class TaskRead(BaseModel):
    """Immutable task snapshot. Datetimes are always aware UTC."""
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    is_complete: bool = False
    order: int = 0
    tags: tuple[TagRead, ...] = ()
    created_at: datetime
    modified_at: datetime

    @classmethod
    def from_model(cls, task: Task) -> "TaskRead":
        tags = sorted(task.tags or [], key=lambda t: (t.name, t.id))
        return cls(
            id=task.id,
            name=task.name,
            description=task.description,
            due_date=as_utc(task.due_date),
            is_complete=bool(task.is_complete),
            order=task.order,
            tags=tuple(TagRead.from_model(t) for t in tags),
            created_at=as_utc(task.created_at),
            modified_at=as_utc(task.modified_at),
        )


class UserRead(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    display_name: Optional[str] = None
    timezone: Optional[str] = None

    @classmethod
    def from_model(cls, user: User) -> "UserRead":
        return cls(id=user.id, username=user.username, display_name=user.display_name, timezone=user.timezone)
