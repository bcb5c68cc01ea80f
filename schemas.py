from datetime import datetime
from typing import Optional, Any, Dict, List, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ---------- Requests ----------
class HarvestCreate(BaseModel):
    actor_user_id: str
    product_name: str = Field(..., min_length=1, max_length=255)
    location: str
    harvest_date: str  # YYYY-MM-DD
    quantity: float = Field(..., gt=0)
    unit: str
    batch_id: Optional[str] = Field(None, min_length=3, max_length=64)
    photo_content_address: Optional[str] = None


class VerifyBatch(BaseModel):
    actor_user_id: str
    certificate_name: str = Field(..., min_length=1)
    expiry_date: str  # YYYY-MM-DD
    certificate_file: str  # base64
    certificate_content_type: str = "application/pdf"
    notes: str = ""


class RejectBatch(BaseModel):
    actor_user_id: str
    notes: Optional[str] = None


class LogisticsRecord(BaseModel):
    actor_user_id: str
    batch_id: str
    quantity: float = Field(..., gt=0)
    unit: str
    gps_coordinates: str = Field(..., min_length=1)
    notes: Optional[str] = None
    counterparty_address: Optional[str] = None


class ShipmentRecord(BaseModel):
    actor_user_id: str
    batch_id: str
    status: Literal["PICKED", "RECEIVED"]
    gps_coordinates: str = Field(..., min_length=1)
    notes: Optional[str] = None


# ---------- Responses ----------
class EventRecorded(BaseModel):
    success: bool = True
    message: str
    event_id: str
    tx_hash: str
    batch_id: str
    batch_status: str
    certificate_id: Optional[str] = None
    shipment_log_id: Optional[str] = None


class BatchStatusChanged(BaseModel):
    success: bool = True
    message: str
    batch_id: str
    batch_status: str


class BatchSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    batch_id: str
    product_name: str
    status: str
    farmer_id: str
    verified_by_id: Optional[str] = None
    rejection_notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    total_events: int = 0


class HistoryEntry(BaseModel):
    id: str
    tx_hash: str
    content_address: str
    block_number: int
    block_timestamp: Optional[str]
    event_type: int
    event_name: str
    description: str
    actor_address: str
    actor_name: Optional[str] = None
    actor_role: str
    gps_coordinates: Optional[str] = None
    notes: Optional[str] = None


class BatchHistory(BaseModel):
    success: bool = True
    batch_id: str
    product_name: str
    status: str
    events: List[HistoryEntry]


class VerificationTrace(BaseModel):
    is_verified: bool
    batch_id: str
    status: str
    event_timestamp: Optional[str] = None
    tx_hash: Optional[str] = None
    verifier_address: Optional[str] = None
    cert_name: Optional[str] = None
    expiry_date: Optional[str] = None
    notes: Optional[str] = None
    certificate_file_hash: Optional[str] = None
    certificate_hash_matches: Optional[bool] = None


class DecodedEventOut(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    event_name: str
    batch_id: str
    actor_address: str
    actor_name: str
    event_type: int
    content_address: str
    timestamp: str
    content: Dict[str, Any]


class DecodedTransactionOut(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    status: Literal["PENDING", "VERIFIED", "FAILURE"]
    tx_hash: str
    block_number: int
    gas_used: str
    events_emitted: int
    decoded_event: Optional[DecodedEventOut] = None


class TransactionResponse(BaseModel):
    success: bool = True
    data: DecodedTransactionOut


class RouteTable(BaseModel):
    role: str
    landing: str
    prefixes: List[str]
    actions: List[str]
    path: Optional[str] = None
    allowed: Optional[bool] = None


class HarvestRecord(BaseModel):
    id: str
    batch_id: str
    content_address: str
    tx_hash: str
    created_at: str
    status: str
    product_name: str
    location: Optional[str] = None
    harvest_date: str
    quantity: Optional[float] = None
    unit: Optional[str] = None
    photo_content_address: Optional[str] = None


class HarvestRecordList(BaseModel):
    success: bool = True
    records: List[HarvestRecord]


class PickupCandidate(BaseModel):
    batch_ref_id: str
    batch_id: str
    product_name: str
    farmer_address: Optional[str] = None
    farmer_name: Optional[str] = None
    initial_quantity: float
    unit: str
    status: str


class InTransitBatch(BaseModel):
    id: str
    batch_id: str
    product_name: str
    status: str = "PICKED"
    picked_by: str
    picked_at: Optional[str] = None
    farmer_name: str
    harvest_date: Optional[str] = None
    data_content_address: Optional[str] = None


class InTransitList(BaseModel):
    success: bool = True
    batches: List[InTransitBatch]
    total: int
