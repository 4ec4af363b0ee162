"""Decoder for the Urevo scale manufacturer-data advertisements.

The scale never connects; it broadcasts the current reading inside the
manufacturer-specific data of its BLE advertisements.  The weight is a
16-bit count of tenths of a pound split across two fields: the high byte
rides in the upper byte of the company identifier and the low byte is
the first payload byte.  Payload bytes 4..9 carry the model marker
``URWS01`` which identifies the vendor.

Nothing in here raises on bad input: a rejected advertisement is simply
``None`` (or ``False``) so callers can drop it cheaply.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

MODEL_MARKER = b"URWS01"
MARKER_OFFSET = 4
MIN_PAYLOAD_LEN = MARKER_OFFSET + len(MODEL_MARKER)
CANDIDATE_NAME = "urevo"
MAX_RAW_WEIGHT = 0xFFFF


@dataclass(frozen=True)
class DecodedPacket:
    company_id: int
    payload: bytes


@dataclass(frozen=True)
class ScaleAdvertisement:
    """One manufacturer-data record as seen by a scanning backend."""

    address: str
    local_name: Optional[str]
    company_id: int
    payload: bytes
    rssi: Optional[int] = None


def parse_company_id_and_payload(blob: bytes) -> Optional[DecodedPacket]:
    """Split a raw manufacturer-data blob into (company id, payload).

    The company identifier is the first two bytes, little endian.  Blobs
    shorter than three bytes carry no payload and are rejected.
    """
    if blob is None or len(blob) < 3:
        return None
    data = bytes(blob)
    company_id = data[0] | (data[1] << 8)
    return DecodedPacket(company_id=company_id, payload=data[2:])


def _has_model_marker(payload: Optional[bytes]) -> bool:
    if payload is None or len(payload) < MIN_PAYLOAD_LEN:
        return False
    return bytes(payload[MARKER_OFFSET:MIN_PAYLOAD_LEN]) == MODEL_MARKER


def is_candidate(local_name: Optional[str], payload: Optional[bytes]) -> bool:
    """Coarse filter: does this advertisement look like a Urevo scale?"""
    if local_name is not None and local_name.lower() == CANDIDATE_NAME:
        return True
    return _has_model_marker(payload)


def decode_weight(company_id: int, payload: bytes) -> Optional[float]:
    """Return the advertised weight in pounds, or ``None`` if not ours."""
    if not _has_model_marker(payload):
        return None
    weight_high = (int(company_id) >> 8) & 0xFF
    weight_low = payload[0]
    raw = (weight_high << 8) | weight_low
    if raw == 0:
        return 0.0
    return raw / 10.0


def advertisement_from_blob(
    address: str,
    local_name: Optional[str],
    blob: bytes,
    rssi: Optional[int] = None,
) -> Optional[ScaleAdvertisement]:
    packet = parse_company_id_and_payload(blob)
    if packet is None:
        return None
    return ScaleAdvertisement(
        address=address,
        local_name=local_name,
        company_id=packet.company_id,
        payload=packet.payload,
        rssi=rssi,
    )


def encode_weight(weight_lbs: float) -> Tuple[int, bytes]:
    """Build a (company id, payload) pair that decodes to ``weight_lbs``.

    Used by the simulated backend; precision is one tenth of a pound.
    """
    raw = int(round(max(0.0, float(weight_lbs)) * 10.0))
    raw = min(MAX_RAW_WEIGHT, raw)
    company_id = ((raw >> 8) & 0xFF) << 8 | 0x01
    payload = bytes([raw & 0xFF, 0x00, 0x00, 0x00]) + MODEL_MARKER
    return company_id, payload


__all__ = [
    "DecodedPacket",
    "MODEL_MARKER",
    "ScaleAdvertisement",
    "advertisement_from_blob",
    "decode_weight",
    "encode_weight",
    "is_candidate",
    "parse_company_id_and_payload",
]
