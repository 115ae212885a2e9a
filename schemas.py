"""
Schemas for Coursespeak deals

A Deal is a flat course-coupon record. The JSON file, the HTTP API and the
admin console all speak camelCase (originalPrice, seoTitle, createdAt);
Python code uses the snake_case attribute names. The database backend
stores snake_case columns, see ROW_COLUMNS below.

Unknown keys are kept on the model so legacy fields survive a read, merge
and write cycle.
"""

import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Fields owned by the store; clients can never set them through a patch
PROTECTED_FIELDS = ("id", "createdAt", "updatedAt")

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[float]:
    """ISO-8601 string (date-only and trailing Z accepted) -> POSIX seconds."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def format_timestamp(millis: int) -> str:
    stamp = EPOCH + timedelta(milliseconds=millis)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class Faq(_CamelModel):
    q: str
    a: str


class Lecture(_CamelModel):
    title: str
    duration: Optional[str] = None


class CurriculumSection(_CamelModel):
    section: str
    lectures: List[Lecture] = []


class DealFields(_CamelModel):
    slug: Optional[str] = None
    title: Optional[str] = None
    provider: Optional[str] = None
    price: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    original_price: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    rating: Optional[float] = Field(None, ge=0, le=5, allow_inf_nan=False)
    students: Optional[int] = Field(None, ge=0)
    coupon: Optional[str] = None
    url: Optional[str] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    expires_at: Optional[str] = None
    image: Optional[str] = None
    description: Optional[str] = None
    content: Optional[str] = Field(None, description="Markdown article body")
    faqs: Optional[List[Faq]] = None
    learn: Optional[List[str]] = None
    requirements: Optional[List[str]] = None
    curriculum: Optional[List[CurriculumSection]] = None
    instructor: Optional[str] = None
    duration: Optional[str] = Field(None, description='e.g. "12h 30m"')
    language: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    seo_title: Optional[str] = None
    seo_description: Optional[str] = None
    seo_og_image: Optional[str] = None
    seo_canonical: Optional[str] = None
    seo_noindex: Optional[bool] = None
    seo_nofollow: Optional[bool] = None

    @field_validator("coupon", mode="before")
    @classmethod
    def _coupon_to_str(cls, v: Any) -> Any:
        if v is None or v == "":
            return None
        return str(v)


class Deal(DealFields):
    id: str

    @field_validator("id", mode="before")
    @classmethod
    def _id_to_str(cls, v: Any) -> Any:
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            if isinstance(v, float) and not math.isfinite(v):
                return v
            return str(int(v)) if float(v).is_integer() else str(v)
        return v

    def to_record(self) -> Dict[str, Any]:
        """camelCase dict as written to the JSON file and returned by the API."""
        return self.model_dump(by_alias=True, exclude_none=True)


# Body of POST /api/admin/deals: everything optional, the store fills defaults
class DealIn(DealFields):
    id: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_to_str(cls, v: Any) -> Any:
        if v is None or v == "":
            return None
        return str(v)

    def to_fields(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True)


# Body of PATCH /api/admin/deals/{id}: only the supplied keys are merged
class DealPatch(DealFields):
    def to_fields(self) -> Dict[str, Any]:
        fields = self.model_dump(by_alias=True, exclude_unset=True)
        for key in PROTECTED_FIELDS:
            fields.pop(key, None)
        return fields


class DealPage(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    items: List[Deal]
    total: int = Field(..., ge=0)
    page: int = Field(..., ge=1)
    page_size: int = Field(..., ge=1)
    total_pages: int = Field(..., ge=0)

    def to_response(self) -> Dict[str, Any]:
        return {
            "items": [d.to_record() for d in self.items],
            "total": self.total,
            "page": self.page,
            "pageSize": self.page_size,
            "totalPages": self.total_pages,
        }


class TokenIn(BaseModel):
    token: Optional[str] = None


# -------------------------------
# Database row mapping
# -------------------------------

# camelCase record key -> snake_case column
ROW_COLUMNS: Dict[str, str] = {
    "id": "id",
    "slug": "slug",
    "title": "title",
    "provider": "provider",
    "price": "price",
    "originalPrice": "original_price",
    "rating": "rating",
    "students": "students",
    "coupon": "coupon",
    "url": "url",
    "category": "category",
    "subcategory": "subcategory",
    "expiresAt": "expires_at",
    "image": "image",
    "description": "description",
    "content": "content",
    "faqs": "faqs",
    "learn": "learn",
    "requirements": "requirements",
    "curriculum": "curriculum",
    "instructor": "instructor",
    "duration": "duration",
    "language": "language",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "seoTitle": "seo_title",
    "seoDescription": "seo_description",
    "seoOgImage": "seo_og_image",
    "seoCanonical": "seo_canonical",
    "seoNoindex": "seo_noindex",
    "seoNofollow": "seo_nofollow",
}

RECORD_KEYS: Dict[str, str] = {column: key for key, column in ROW_COLUMNS.items()}


def to_row(record: Dict[str, Any]) -> Dict[str, Any]:
    return {ROW_COLUMNS.get(k, k): v for k, v in record.items()}


def from_row(row: Dict[str, Any]) -> Dict[str, Any]:
    return {RECORD_KEYS.get(k, k): v for k, v in row.items() if k != "_id"}
