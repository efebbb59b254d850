from typing import Any, Generic, List, Optional, TypeVar
from pydantic import BaseModel, Field

T = TypeVar("T")


class PageMeta(BaseModel):
    limit: int
    offset: int
    total: int
    has_more: bool


class PaginatedResponse(BaseModel, Generic[T]):
    data: List[T] = Field(default_factory=list)  # type: ignore[assignment]
    pagination: PageMeta


def build_page(limit: int, offset: int, total: int) -> PageMeta:
    return PageMeta(
        limit=limit,
        offset=offset,
        total=total,
        has_more=offset + limit < total,
    )


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


def iso(value) -> Optional[str]:
    return value.isoformat() if value else None
