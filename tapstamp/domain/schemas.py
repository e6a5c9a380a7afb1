from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ============================================
# Branding Schemas
# ============================================
# Branding is stored as JSON on the merchant row with camelCase keys.

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StampStyle(_CamelModel):
    shape: Literal["circle", "square", "logo"] = "circle"
    filled_color: str = "#8B5A2B"
    empty_color: str = "#F5F0EB"
    outline_color: str = "#8B5A2B"


class BackgroundStyle(_CamelModel):
    color: str = "#FFFFFF"


class Branding(_CamelModel):
    logo_url: Optional[str] = None
    header_logo_url: Optional[str] = None
    primary_color: str = "#8B5A2B"
    secondary_color: str = "#F5F0EB"
    label_color: str = "#1A1A1A"
    background: BackgroundStyle = Field(default_factory=BackgroundStyle)
    stamp: StampStyle = Field(default_factory=StampStyle)


# ============================================
# Merchant / Member Schemas
# ============================================

class Merchant(BaseModel):
    id: str
    slug: str = ""
    name: str
    reward_goal: int = Field(..., gt=0)
    branding: Branding = Field(default_factory=Branding)
    branding_version: int = 1
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict) -> "Merchant":
        """Build from a `merchants` table row."""
        return cls(
            id=row["id"],
            slug=row.get("slug") or "",
            name=row["name"],
            reward_goal=row["reward_goal"],
            branding=Branding.model_validate(row.get("branding") or {}),
            branding_version=row.get("branding_version") or 1,
            created_at=row.get("created_at"),
        )


class Member(BaseModel):
    id: str
    merchant_id: str
    stamp_count: int = Field(default=0, ge=0)
    reward_available: bool = False
    last_stamp_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    name: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "Member":
        """Build from a `members` table row."""
        return cls(
            id=row["id"],
            merchant_id=row["merchant_id"],
            stamp_count=row.get("stamp_count") or 0,
            reward_available=bool(row.get("reward_available")),
            last_stamp_at=row.get("last_stamp_at"),
            created_at=row.get("created_at"),
            name=row.get("name"),
        )


# ============================================
# API Schemas
# ============================================

class StampResponse(BaseModel):
    member_id: str
    stamp_count: int
    reward_goal: int
    reward_available: bool
    message: str
    push: Optional[dict] = None


class CooldownErrorResponse(BaseModel):
    detail: str
    remaining_seconds: int


class DeviceRegistration(BaseModel):
    pushToken: str


class ErrorResponse(BaseModel):
    detail: str
