from __future__ import annotations

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError

MAX_TITLE_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 1000
MIN_PRICE = Decimal("0.01")
MAX_PRICE = Decimal("999999.99")
MAX_IMAGES = 9


class ListingDraft(BaseModel):
    """Owner-supplied content of a new listing."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    category_id: int = Field(gt=0)
    title: str = Field(min_length=1, max_length=MAX_TITLE_LENGTH)
    description: str = Field(min_length=1, max_length=MAX_DESCRIPTION_LENGTH)
    price_usd: Decimal = Field(ge=MIN_PRICE, le=MAX_PRICE, decimal_places=2)
    images: list[str] = Field(min_length=1, max_length=MAX_IMAGES)
    contact_username: str = Field(min_length=1, max_length=32)
    auto_bump_enabled: bool = False

    @field_validator("images")
    @classmethod
    def _image_urls(cls, value: list[str]) -> list[str]:
        for url in value:
            if not url.startswith(("https://", "http://")):
                raise ValueError(f"image must be an http(s) URL: {url!r}")
        return value

    @field_validator("contact_username")
    @classmethod
    def _strip_at(cls, value: str) -> str:
        return value.lstrip("@")


def parse_draft(data: ListingDraft | dict[str, Any]) -> ListingDraft:
    if isinstance(data, ListingDraft):
        return data
    try:
        return ListingDraft.model_validate(data)
    except PydanticValidationError as exc:
        fields = {".".join(str(part) for part in err["loc"]): err["msg"] for err in exc.errors()}
        raise ValidationError("Invalid listing", fields=fields) from exc
