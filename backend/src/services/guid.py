"""
Prefixed GUIDs for aggregates, audit records and timers.

A GUID is ``{prefix}_{body}``: a three-letter kind prefix and the 128-bit
UUIDv7 written as 26 lowercase Crockford Base32 digits. UUIDv7 keeps ids
roughly ordered by creation time. Decoding accepts any letter case.

    evt  Event
    tkt  Ticket
    stx  StatusTransition (audit record)
    tmr  ScheduledTransition (durable timer)
"""

import re
import uuid
from typing import Optional, Tuple, Union

import base32_crockford
from uuid_extensions import uuid7

ENTITY_PREFIXES = {
    "evt": "Event",
    "tkt": "Ticket",
    "stx": "StatusTransition",
    "tmr": "ScheduledTransition",
}

BODY_LENGTH = 26

# Crockford's alphabet leaves out I, L, O and U
GUID_PATTERN = re.compile(
    r"^(%s)_[0-9a-hjkmnp-tv-z]{%d}$" % ("|".join(ENTITY_PREFIXES), BODY_LENGTH),
    re.IGNORECASE,
)


class GuidService:
    """Static helpers to mint, encode, decode and check GUIDs."""

    @staticmethod
    def generate_uuid() -> uuid.UUID:
        return uuid7()

    @staticmethod
    def generate_guid(prefix: str) -> str:
        """Mint a fresh GUID for ``prefix``."""
        return GuidService.encode_uuid(GuidService.generate_uuid(), prefix)

    @staticmethod
    def encode_uuid(value: Union[uuid.UUID, bytes], prefix: str) -> str:
        """
        Encode a UUID (or its 16 raw bytes) under ``prefix``.

        Raises:
            ValueError: If the prefix is not one of ENTITY_PREFIXES
        """
        if prefix not in ENTITY_PREFIXES:
            raise ValueError(
                f"Invalid prefix '{prefix}', expected one of {sorted(ENTITY_PREFIXES)}"
            )
        raw = value if isinstance(value, bytes) else value.bytes
        body = base32_crockford.encode(int.from_bytes(raw, "big"))
        return f"{prefix}_{body.zfill(BODY_LENGTH).lower()}"

    @staticmethod
    def decode_guid(guid: str) -> Tuple[str, uuid.UUID]:
        """
        Split a GUID into its prefix and UUID.

        Raises:
            ValueError: If the string is not a well-formed GUID
        """
        if not guid or not GUID_PATTERN.match(guid):
            raise ValueError(f"Malformed GUID: {guid!r}")

        prefix, body = guid.lower().split("_", 1)
        number = base32_crockford.decode(body.upper())
        try:
            return prefix, uuid.UUID(bytes=number.to_bytes(16, "big"))
        except OverflowError:
            raise ValueError(f"GUID body out of range: {guid!r}")

    @staticmethod
    def validate_guid(guid: Optional[str], expected_prefix: Optional[str] = None) -> bool:
        """True if ``guid`` is well formed (and carries ``expected_prefix``, if given)."""
        prefix = GuidService.get_prefix(guid)
        if prefix is None:
            return False
        return expected_prefix is None or prefix == expected_prefix.lower()

    @staticmethod
    def get_prefix(guid: Optional[str]) -> Optional[str]:
        """Lowercase prefix of a well-formed GUID, else None."""
        if not guid or not GUID_PATTERN.match(guid):
            return None
        return guid[:3].lower()
