"""Pydantic schemas for the hydrotrack API.

Request/response models for:
- Job payloads (image, barcode, text) as stored on the queue
- Job submission and status
- Consumption entries
- Goals and user settings
"""

from datetime import datetime, date
from typing import Any, Optional, Literal, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator


SipSize = Literal["small", "medium", "large"]
HandSize = Literal["small", "medium", "large"]


# --- Job payloads ---

class ImagePayload(BaseModel):
    user_id: str
    image_data: str = Field(..., min_length=1)
    image_format: str = "jpeg"
    percentage: Optional[float] = Field(None, ge=0, le=100)
    duration: Optional[Union[int, float, str]] = None  # seconds, or "5 seconds"
    servings: Optional[float] = Field(1, gt=0, le=24)
    liquid_type: Optional[str] = Field(None, max_length=80)


class BarcodePayload(ImagePayload):
    image_data: Optional[str] = None
    barcode: Optional[str] = Field(None, max_length=64)
    product_name: Optional[str] = Field(None, max_length=200)

    @model_validator(mode="after")
    def needs_image_or_barcode(self):
        if not self.image_data and not self.barcode:
            raise ValueError("barcode jobs need image_data or barcode")
        return self


class TextPayload(BaseModel):
    user_id: str
    description: str = Field(..., min_length=1, max_length=500)


# --- Job submission ---

class ImageJobRequest(BaseModel):
    image_data: str = Field(..., min_length=1)
    image_format: str = "jpeg"
    percentage: Optional[float] = Field(None, ge=0, le=100)
    duration: Optional[Union[int, float, str]] = None
    servings: Optional[float] = Field(1, gt=0, le=24)
    liquid_type: Optional[str] = Field(None, max_length=80)


class BarcodeJobRequest(ImageJobRequest):
    image_data: Optional[str] = None
    barcode: Optional[str] = Field(None, max_length=64)
    product_name: Optional[str] = Field(None, max_length=200)


class TextJobRequest(BaseModel):
    description: str = Field(..., min_length=1, max_length=500)


class JobOut(BaseModel):
    id: str
    job_type: str
    status: str  # pending | processing | complete | error
    attempts: int
    max_attempts: int
    result: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# --- Entries ---

class EntryCreate(BaseModel):
    ounces: float = Field(..., gt=0, le=128)
    liquid_type: str = Field("water", min_length=1, max_length=80)
    timestamp: Optional[datetime] = None
    servings: float = Field(1, gt=0, le=24)
    description: Optional[str] = Field(None, max_length=500)
    created_from_favorite: bool = False


class EntryWriteOut(BaseModel):
    entry_id: str
    ounces: float
    entry_date: date
    week_start_date: date
    time_bucket: str
    liquid_type: str
    classification: str
    daily_total: float
    weekly_total: float
    days_with_data: int
    days_goal_met: int

    class Config:
        from_attributes = True


class FavoriteOut(BaseModel):
    id: str
    is_favorited: bool
    favorite_order: Optional[int]

    class Config:
        from_attributes = True


# --- Goals ---

class GoalSet(BaseModel):
    daily_goal: float = Field(..., gt=0, le=512)
    effective_from: Optional[date] = None  # defaults to next Monday


class GoalRangeOut(BaseModel):
    id: str
    daily_goal: float
    effective_from_date: date
    effective_until_date: Optional[date]

    class Config:
        from_attributes = True


class GoalHistoryOut(BaseModel):
    ranges: list[GoalRangeOut]
    issues: list[dict[str, Any]] = []


# --- Settings ---

class SettingsUpdate(BaseModel):
    timezone: Optional[str] = None
    daily_goal: Optional[float] = Field(None, gt=0, le=512)
    sip_size: Optional[SipSize] = None
    hand_size: Optional[HandSize] = None

    @field_validator("timezone")
    @classmethod
    def known_timezone(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}")
        return v


class UserSettingsOut(BaseModel):
    user_id: str
    timezone: str
    daily_goal: float
    sip_size: str
    hand_size: str

    class Config:
        from_attributes = True
