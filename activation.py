"""
Activation transition.

A completed purchase sets the license to valid, restarts its one-year
validity window from today and adds the purchased features. Everything in
this module is pure: the caller supplies the date and installs the result.
"""
import logging
from datetime import date
from typing import Callable, Iterable, Optional

from records import FeatureId, Ledger, LicenseRecord, LicenseStatus, canonical_serial, empty_record

logger = logging.getLogger(__name__)

FEATURE_PRODUCT_PREFIX = "feature-"

def feature_ids(items: Iterable) -> frozenset:
    """Coerce feature identifiers (enum members or their string values); ValueError on unknown ones."""
    return frozenset(FeatureId(item) for item in items)

def add_one_year(day: date) -> date:
    """Same month and day next year; Feb 29 clamps to Feb 28."""
    try:
        return day.replace(year=day.year + 1)
    except ValueError:
        return day.replace(year=day.year + 1, day=28)

def activate_record(
    record: Optional[LicenseRecord],
    serial: str,
    purchased: Iterable[FeatureId],
    today: date,
) -> LicenseRecord:
    """Apply a completed purchase to a record (or to a fresh one if None)."""
    current = record or empty_record(serial)
    return current.model_copy(update={
        "status": LicenseStatus.VALID,
        "activation_date": today,
        "expiration_date": add_one_year(today),
        "active_features": current.active_features | feature_ids(purchased),
    })

def activation_mutation(
    serial: str,
    purchased: Iterable[FeatureId],
    today: date,
) -> Callable[[Ledger], Ledger]:
    """
    Build the Ledger -> Ledger step for one purchase.

    An empty serial yields the identity mutation. Features may be given as
    FeatureId members or their string values.
    """
    key = canonical_serial(serial)
    features = feature_ids(purchased)

    def mutate(ledger: Ledger) -> Ledger:
        if not key:
            return ledger
        updated = dict(ledger)
        updated[key] = activate_record(ledger.get(key), key, features, today)
        return updated

    return mutate

def parse_purchased_features(raw: Optional[str]) -> frozenset:
    """
    Turn checkout metadata ("feature-3d-models,feature-ndi") into FeatureIds.

    Identifiers outside the feature catalog are dropped.
    """
    features = set()
    for item in (raw or "").split(","):
        item = item.strip()
        if not item:
            continue
        if item.startswith(FEATURE_PRODUCT_PREFIX):
            item = item[len(FEATURE_PRODUCT_PREFIX):]
        try:
            features.add(FeatureId(item))
        except ValueError:
            logger.warning("Ignoring unknown purchased feature %r", item)
    return frozenset(features)
