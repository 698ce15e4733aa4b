"""Custom column types."""

import logging

from sqlalchemy import Text
from sqlalchemy.types import TypeDecorator

logger = logging.getLogger(__name__)


class EncryptedString(TypeDecorator):
    """Text column encrypted at rest with the field encryption service.

    ``context`` is bound into the ciphertext, so a value copied from one
    column into another will not decrypt.
    """

    impl = Text
    cache_ok = True

    def __init__(self, context: str, *args, **kwargs):
        self.context = context
        super().__init__(*args, **kwargs)

    def process_bind_param(self, value, dialect):
        if value is None or value == "":
            return value
        from foodhub.services.encryption_service import encryption_service
        return encryption_service.encrypt_value(str(value), self.context)

    def process_result_value(self, value, dialect):
        if value is None or value == "":
            return value
        from foodhub.services.encryption_service import encryption_service
        decrypted = encryption_service.decrypt_value(value, self.context)
        if decrypted is None:
            logger.warning(f"Could not decrypt {self.context} column value")
        return decrypted
