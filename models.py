from datetime import date
from pydantic import BaseModel, Field
from typing import Optional, List, Dict

from records import LicenseRecord

class LicenseInfoResponse(BaseModel):
    status: str
    activation_date: Optional[date] = None
    expires: Optional[date] = None
    activeFeatures: List[str] = []

    @classmethod
    def from_record(cls, record: LicenseRecord) -> "LicenseInfoResponse":
        return cls(
            status=record.status.value,
            activation_date=record.activation_date,
            expires=record.expiration_date,
            activeFeatures=sorted(f.value for f in record.active_features),
        )

class ErrorResponse(BaseModel):
    error: str

class CartItem(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    options: Dict[str, str] = Field(default_factory=dict)

class CheckoutSessionRequest(BaseModel):
    cart: List[CartItem] = Field(default_factory=list)
    customerEmail: Optional[str] = None
    serialNumber: Optional[str] = None

class CheckoutSessionResponse(BaseModel):
    url: str

class WebhookAckResponse(BaseModel):
    received: bool

class HealthCheckResponse(BaseModel):
    status: str
    service: str
    version: str
    records: int
    versionToken: Optional[str] = None
    dirty: bool = False
