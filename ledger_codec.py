"""
Ledger <-> CSV text codec.

The persisted object is a UTF-8 CSV file with a fixed header. Feature
membership is stored as one column per feature holding the literal tokens
``True`` / ``False``. Decoding is tolerant: columns are located by header
name, unknown columns are ignored and a file without a usable header
decodes to an empty ledger.
"""
import csv
import io
import logging
from datetime import date
from typing import Dict, List, Optional, Union

from errors import DecodeError
from records import FeatureId, Ledger, LicenseRecord, LicenseStatus, canonical_serial

logger = logging.getLogger(__name__)

FEATURE_COLUMNS: Dict[FeatureId, str] = {
    FeatureId.MODELS_3D: "feature_3d_models",
    FeatureId.PARALLAX: "feature_parallax",
    FeatureId.IMAGE_ADDITION: "feature_image_addition",
    FeatureId.NDI: "feature_ndi",
}

CSV_HEADERS: List[str] = [
    "serial",
    "status",
    "activation_date",
    "expiration_date",
    *FEATURE_COLUMNS.values(),
]

TRUE_TOKEN = "True"
FALSE_TOKEN = "False"

def _format_date(value: Optional[date]) -> str:
    return value.isoformat() if value else ""

def encode_row(record: LicenseRecord) -> List[str]:
    row = [
        record.serial,
        record.status.value,
        _format_date(record.activation_date),
        _format_date(record.expiration_date),
    ]
    for feature in FEATURE_COLUMNS:
        row.append(TRUE_TOKEN if feature in record.active_features else FALSE_TOKEN)
    return row

def encode(ledger: Ledger) -> str:
    """Serialize the whole ledger, header first, one row per record."""
    buffer = io.StringIO()
    # QUOTE_MINIMAL wraps values holding a comma, quote or newline and doubles embedded quotes
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for record in ledger.values():
        writer.writerow(encode_row(record))
    return buffer.getvalue()

def _cell(row: List[str], index: Dict[str, int], column: str) -> str:
    position = index.get(column)
    if position is None or position >= len(row):
        return ""
    return row[position].strip()

def _parse_status(raw: str, serial: str) -> LicenseStatus:
    if not raw:
        return LicenseStatus.NOT_ACTIVE
    try:
        return LicenseStatus(raw)
    except ValueError:
        logger.warning("Unknown status %r for serial %s, treating as %s",
                       raw, serial, LicenseStatus.NOT_ACTIVE.value)
        return LicenseStatus.NOT_ACTIVE

def _parse_date(raw: str, serial: str, column: str) -> Optional[date]:
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        logger.warning("Unparsable %s %r for serial %s, dropping it", column, raw, serial)
        return None

def decode_row(row: List[str], index: Dict[str, int]) -> Optional[LicenseRecord]:
    serial = canonical_serial(_cell(row, index, "serial"))
    if not serial:
        return None

    features = frozenset(
        feature
        for feature, column in FEATURE_COLUMNS.items()
        if _cell(row, index, column) == TRUE_TOKEN
    )
    return LicenseRecord(
        serial=serial,
        status=_parse_status(_cell(row, index, "status"), serial),
        activation_date=_parse_date(_cell(row, index, "activation_date"), serial, "activation_date"),
        expiration_date=_parse_date(_cell(row, index, "expiration_date"), serial, "expiration_date"),
        active_features=features,
    )

def decode_strict(content: Union[str, bytes]) -> Ledger:
    """
    Parse persisted content into a ledger.

    Raises DecodeError when the content is not text, is not CSV, or has no
    header with a ``serial`` column. Empty content is an empty ledger.
    """
    if isinstance(content, bytes):
        try:
            content = content.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise DecodeError(f"ledger is not valid UTF-8: {e}") from e

    try:
        rows = [row for row in csv.reader(io.StringIO(content)) if any(cell.strip() for cell in row)]
    except csv.Error as e:
        raise DecodeError(f"malformed CSV: {e}") from e

    if not rows:
        return {}

    index = {name.strip(): position for position, name in enumerate(rows[0])}
    if "serial" not in index:
        raise DecodeError(f"header has no serial column: {rows[0]!r}")

    ledger: Ledger = {}
    for row in rows[1:]:
        record = decode_row(row, index)
        if record is None:
            continue
        ledger[record.serial] = record
    return ledger

def decode(content: Union[str, bytes]) -> Ledger:
    """Fail-soft decode: anything unreadable becomes an empty ledger."""
    try:
        return decode_strict(content)
    except DecodeError as e:
        logger.warning("Discarding unreadable ledger content: %s", e)
        return {}
