"""Shared field types and the paged-list envelope."""
from __future__ import annotations

from typing import Annotated, Generic, TypeVar

from pydantic import BaseModel, Field, StringConstraints

T = TypeVar("T")

Tag = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=50)]
Tags = Annotated[list[Tag], Field(max_length=20)]


class PaginationOut(BaseModel):
    page: int
    per_page: int
    total: int
    total_pages: int


class Paginated(BaseModel, Generic[T]):
    data: list[T]
    pagination: PaginationOut


class UserRef(BaseModel):
    id: str
    name: str
    email: str
    role: str | None = None
