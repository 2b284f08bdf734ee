from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar

from sqlalchemy.orm import Session

from .exceptions import NotFoundError

T = TypeVar("T")  # ORM model type


class BaseRepository[T]:
    """
    Small generic repository with the common CRUD helpers.

    Writes only flush; committing belongs to the caller's unit of work.
    """

    model: type[T]  # must be set by subclasses
    resource_name: str = "Record"
    not_found: Callable[[Any], NotFoundError] | None = None

    def __init__(self, session: Session):
        if not hasattr(self, "model") or self.model is None:
            raise ValueError(f"{self.__class__.__name__}.model must be set to an ORM class.")
        self.s = session

    # ---------- Read ----------
    def get(self, id_: Any) -> T | None:
        return self.s.get(self.model, id_)

    def get_by_id_required(self, id_: Any) -> T:
        obj = self.get(id_)
        if obj is None:
            if self.not_found is not None:
                raise self.not_found(id_)
            raise NotFoundError(self.resource_name, id_)
        return obj

    # ---------- Write ----------
    def create(self, **fields: Any) -> T:
        obj = self.model(**fields)
        self.s.add(obj)
        self.s.flush()
        return obj

    def update(self, obj: T, **fields: Any) -> T:
        for k, v in fields.items():
            setattr(obj, k, v)
        self.s.flush()
        return obj

    def delete(self, obj: T) -> None:
        self.s.delete(obj)
        self.s.flush()
