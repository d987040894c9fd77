from __future__ import annotations

from typing import Any, Mapping, Optional, Tuple, Type, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from codex_keeper.errors import ValidationError
from codex_keeper.fetcher.urls import sanitize_url


class _Request(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)


class _PageRequest(_Request):
    page: int = Field(default=1, ge=1)
    page_size: Optional[int] = Field(default=None, ge=1)


class ListDocumentsRequest(_PageRequest):
    category: Optional[str] = None
    tag: Optional[str] = None


class AddOrUpdateRequest(_Request):
    name: str = Field(min_length=1, max_length=200)
    url: str
    description: str = ""
    category: str = ""
    tags: Tuple[str, ...] = ()
    version: Optional[str] = None
    alternative_url: Optional[str] = None

    @field_validator("url", "alternative_url")
    @classmethod
    def _check_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        try:
            return sanitize_url(value)
        except ValidationError as e:
            raise ValueError(e.message) from e

    @field_validator("tags")
    @classmethod
    def _clean_tags(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        return tuple(dict.fromkeys(t.strip().lower() for t in value if t.strip()))


class RemoveRequest(_Request):
    name: str = Field(min_length=1)


class SearchRequest(_PageRequest):
    query: str = Field(min_length=1, max_length=500)
    category: Optional[str] = None
    tag: Optional[str] = None


class RefreshCacheRequest(_Request):
    name: Optional[str] = None
    force: bool = False


class FindLinesRequest(_Request):
    name: str = Field(min_length=1)
    query: str = Field(min_length=1, max_length=500)


class GetVersionRequest(_Request):
    name: str = Field(min_length=1)
    version: str = Field(min_length=1)


RequestT = TypeVar("RequestT", bound=BaseModel)


def build_request(model: Type[RequestT], payload: Mapping[str, Any]) -> RequestT:
    """Validate an untyped payload from a transport into a typed request."""
    try:
        return model.model_validate(dict(payload))
    except pydantic.ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Invalid {model.__name__}: {details}", cause=e) from e
