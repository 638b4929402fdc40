"""
GUID column support for lifecycle models.

Every lifecycle table keeps an integer primary key for joins and a UUIDv7
``uuid`` column that is exposed externally as a prefixed GUID
(see backend.src.services.guid).
"""

import uuid as uuid_module
from typing import ClassVar, Optional

from sqlalchemy import Column, LargeBinary, TypeDecorator
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from uuid_extensions import uuid7

from backend.src.services.guid import GuidService


class UUIDType(TypeDecorator):
    """
    UUID column that is native on PostgreSQL and 16 raw bytes elsewhere.

    Values always come back as ``uuid.UUID``.
    """

    impl = LargeBinary
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(LargeBinary(16))

    @staticmethod
    def _coerce(value) -> uuid_module.UUID:
        if isinstance(value, uuid_module.UUID):
            return value
        if isinstance(value, bytes):
            return uuid_module.UUID(bytes=value)
        return uuid_module.UUID(str(value))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = self._coerce(value)
        return value if dialect.name == 'postgresql' else value.bytes

    def process_result_value(self, value, dialect):
        return None if value is None else self._coerce(value)


class GuidMixin:
    """
    Adds the ``uuid`` column and the ``guid`` / ``parse_guid`` helpers.

    Subclasses set GUID_PREFIX:

        class Ticket(Base, GuidMixin):
            GUID_PREFIX = "tkt"
    """

    GUID_PREFIX: ClassVar[str]

    uuid = Column(UUIDType(), nullable=False, unique=True, index=True, default=uuid7)

    @property
    def guid(self) -> Optional[str]:
        # uuid is only populated on flush
        if self.uuid is None:
            return None
        return GuidService.encode_uuid(self.uuid, self.GUID_PREFIX)

    @classmethod
    def parse_guid(cls, guid: str) -> uuid_module.UUID:
        """
        Decode a GUID of this model's kind.

        Raises:
            ValueError: If the GUID is malformed or has another kind's prefix
        """
        prefix, value = GuidService.decode_guid(guid)
        if prefix != cls.GUID_PREFIX:
            raise ValueError(f"{cls.__name__} GUIDs start with '{cls.GUID_PREFIX}_', got '{prefix}_'")
        return value
