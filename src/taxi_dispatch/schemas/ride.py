"""Pydantic schemas for ride requests.

Learn: Separate schemas for create/read keep the API clean.
- RideCreate: what you POST to request a taxi
- RideRead: what the API returns
- TicketRead: create response (the request + how the broadcast went)
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class CoordinatesIn(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    name: Optional[str] = None
    address: Optional[str] = None


class RideCreate(BaseModel):
    client_phone: str = Field(..., min_length=1, max_length=20)
    client_name: str
    location: Optional[str] = None
    coordinates: Optional[CoordinatesIn] = None


class RideCancel(BaseModel):
    reason: str = Field(default="client", max_length=200)


class RideRead(BaseModel):
    id: uuid.UUID
    client_phone: str
    client_name: str
    location: str
    sector: Optional[str]
    status: str
    assigned_driver_id: Optional[uuid.UUID]
    cancel_reason: Optional[str]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class BroadcastRead(BaseModel):
    sent: int
    failed: int
    errors: list[str] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class TicketRead(BaseModel):
    request: RideRead
    broadcast: BroadcastRead
    auto_cancelled: bool

    model_config = {"from_attributes": True}


class AcceptRead(BaseModel):
    """Result of a driver's accept attempt."""
    outcome: str  # "assigned" | "already_taken" | "not_eligible"
    request: Optional[RideRead] = None
    reason: Optional[str] = None
