from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ChatRequest(BaseModel):
    """Inbound payload posted by the chat widget."""
    session_id: str = Field(min_length=1)
    message_text: str = Field(min_length=1)
    page_url: Optional[str] = None
    referrer: Optional[str] = None
    geo: Optional[Dict[str, Any]] = None
    organization_id: Optional[str] = None
    mode: Optional[str] = None


class VehiclePayload(BaseModel):
    year: Optional[str] = None
    make: Optional[str] = None
    model: Optional[str] = None


class ExtractedPayload(BaseModel):
    vehicle: Optional[VehiclePayload] = None
    email: Optional[str] = None
    order_number: Optional[str] = None


class FleetPayload(BaseModel):
    vehicle_count: int
    total_sqft: int
    subtotal: int
    discount_percent: int
    total: int


class PricingPayload(BaseModel):
    """Either a quoted price or an explicit block; never a guessed number."""
    status: str
    sqft: Optional[int] = None
    cost: Optional[int] = None
    unit_rate: Optional[float] = None
    reason: Optional[str] = None
    fleet: Optional[FleetPayload] = None


class OrderStatusPayload(BaseModel):
    kind: str
    order_number: str
    status: Optional[str] = None
    label: Optional[str] = None
    summary: Optional[str] = None
    code: Optional[str] = None


class ChatResponse(BaseModel):
    """Response payload returned to the chat widget."""
    success: bool
    message: str
    agent: str
    conversation_id: Optional[str] = None
    extracted: ExtractedPayload = Field(default_factory=ExtractedPayload)
    pricing: Optional[PricingPayload] = None
    order_status: Optional[OrderStatusPayload] = None


class StoredMessage(BaseModel):
    """Persisted message record."""
    direction: str
    content: str
    sender_name: str
    timestamp: float
    metadata: Optional[Dict[str, Any]] = None


class TranscriptResponse(BaseModel):
    conversation_id: str
    stage: str
    messages: List[StoredMessage]
