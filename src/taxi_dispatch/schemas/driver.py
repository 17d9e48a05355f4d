"""Pydantic schemas for drivers and inbound chat messages."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from taxi_dispatch.schemas.ride import CoordinatesIn


class DriverCreate(BaseModel):
    phone: str = Field(..., min_length=1, max_length=20)
    name: str
    plate: str
    location: Optional[str] = None


class DriverStatus(BaseModel):
    is_active: bool


class DriverLocation(BaseModel):
    location: str


class DriverRead(BaseModel):
    id: uuid.UUID
    phone: str
    name: str
    plate: str
    location: Optional[str]
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class InboundMessage(BaseModel):
    """One message forwarded by the messaging gateway."""
    phone: str = Field(..., min_length=1, max_length=64)
    text: str = ""
    coordinates: Optional[CoordinatesIn] = None


class InboundRead(BaseModel):
    role: str
    action: str
    state: Optional[str] = None
    replies: list[str] = Field(default_factory=list)
