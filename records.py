from datetime import date
from enum import Enum
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, field_validator

class FeatureId(str, Enum):
    MODELS_3D = "3d-models"
    PARALLAX = "parallax"
    IMAGE_ADDITION = "image-addition"
    NDI = "ndi"

class LicenseStatus(str, Enum):
    NOT_ACTIVE = "not-active"
    VALID = "valid"
    EXPIRED = "expired"

def canonical_serial(raw: Optional[str]) -> str:
    """Ledger key form of a serial: trimmed and upper-cased."""
    return (raw or "").strip().upper()

class LicenseRecord(BaseModel):
    """
    Activation state of one hardware serial.

    Records are immutable; transitions build a new record with model_copy().
    """
    model_config = ConfigDict(frozen=True)

    serial: str
    status: LicenseStatus = LicenseStatus.NOT_ACTIVE
    activation_date: Optional[date] = None
    expiration_date: Optional[date] = None
    active_features: FrozenSet[FeatureId] = frozenset()

    @field_validator("serial")
    @classmethod
    def _canonical_serial(cls, value: str) -> str:
        serial = canonical_serial(value)
        if not serial:
            raise ValueError("serial must not be empty")
        return serial

    def has_feature(self, feature: FeatureId) -> bool:
        return feature in self.active_features

# Canonical serial -> record. Treated as immutable once installed in a LedgerStore.
Ledger = Dict[str, LicenseRecord]

def empty_record(serial: str) -> LicenseRecord:
    return LicenseRecord(serial=serial)
