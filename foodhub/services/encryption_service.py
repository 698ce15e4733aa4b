"""Field-level encryption for PII and payment data.

Values are encrypted with AES-256-GCM (see ``foodhub.core.security``). Each
ciphertext binds a context string ("customer.phone", "pii:ssn", ...) into the
plaintext so a value cannot be decrypted under a different context.
"""

import hashlib
import hmac
import logging
import re
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from foodhub.core.config import settings
from foodhub.core.security import decrypt_data, encrypt_data, get_password_hash, verify_password

logger = logging.getLogger(__name__)


class SecurityException(Exception):
    """Raised when sensitive data cannot be protected or recovered."""


class EncryptionService:
    SENSITIVE_FIELDS = (
        "phone",
        "address",
        "payment_method_details",
        "credit_card_last_four",
        "bank_account_details",
        "personal_notes",
        "loyalty_card_number",
    )

    SENSITIVE_NAME_FRAGMENTS = ("password", "token", "secret", "key")

    PII_TYPES = ("phone", "address", "credit_card", "email", "ssn", "passport", "driver_license")

    def __init__(self, key_material: Optional[str] = None):
        self._key_material = key_material

    @property
    def _key(self) -> str:
        return self._key_material or settings.encryption_key or settings.secret_key

    # ------------------------------------------------------------------
    # Single values
    # ------------------------------------------------------------------

    def is_sensitive_field(self, field: str) -> bool:
        lowered = field.lower()
        if lowered in self.SENSITIVE_FIELDS:
            return True
        return any(fragment in lowered for fragment in self.SENSITIVE_NAME_FRAGMENTS)

    def encrypt_value(self, value: str, context: str = "default") -> str:
        return encrypt_data(f"{context}:{value}", self._key)

    def decrypt_value(self, ciphertext: str, context: str = "default") -> Optional[str]:
        """Decrypt a value; None when it is corrupt or was encrypted for another context."""
        try:
            plaintext = decrypt_data(ciphertext, self._key)
        except ValueError:
            logger.warning(f"Decryption failed for context '{context}'")
            return None
        prefix = f"{context}:"
        if not plaintext.startswith(prefix):
            logger.warning(f"Encryption context mismatch, expected '{context}'")
            return None
        return plaintext[len(prefix):]

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def encrypt_sensitive_data(
        self, data: Dict[str, Any], fields: Optional[Iterable[str]] = None,
    ) -> Dict[str, Any]:
        """Encrypt the sensitive fields of a record. Raises SecurityException on failure."""
        fields = list(fields) if fields is not None else [k for k in data if self.is_sensitive_field(k)]
        result = dict(data)
        encrypted = []
        for field in fields:
            value = result.get(field)
            if value is None or value == "":
                continue
            try:
                result[field] = self.encrypt_value(str(value), field)
            except Exception as e:
                logger.error(f"Failed to encrypt field '{field}': {e}")
                raise SecurityException(f"Failed to encrypt sensitive field: {field}") from e
            encrypted.append(field)

        if encrypted:
            logger.info(f"Encrypted sensitive fields: {', '.join(encrypted)}")
        return result

    def decrypt_sensitive_data(
        self, data: Dict[str, Any], fields: Optional[Iterable[str]] = None,
    ) -> Dict[str, Any]:
        """Decrypt fields in place of their ciphertext; failures become None."""
        fields = list(fields) if fields is not None else [k for k in data if self.is_sensitive_field(k)]
        result = dict(data)
        failed = []
        for field in fields:
            value = result.get(field)
            if value is None or value == "":
                continue
            decrypted = self.decrypt_value(str(value), field)
            if decrypted is None:
                failed.append(field)
            result[field] = decrypted

        if failed:
            logger.warning(f"Could not decrypt fields: {', '.join(failed)}")
        return result

    def encrypt_payment_data(self, payment: Dict[str, Any]) -> Dict[str, Any]:
        """Replace raw card and bank numbers with encrypted fragments and tokens."""
        result = dict(payment)

        card_number = result.pop("credit_card_number", None)
        if card_number:
            digits = re.sub(r"\D", "", str(card_number))
            result["credit_card_last_four"] = self.encrypt_value(digits[-4:], "credit_card_last_four")
            result["credit_card_token"] = self.generate_payment_token(digits)

        cvv = result.pop("cvv", None)
        if cvv:
            result["cvv_hash"] = self.hash_value(str(cvv))

        account_number = result.pop("bank_account_number", None)
        if account_number:
            account_number = str(account_number)
            result["bank_account_number_encrypted"] = self.encrypt_value(account_number, "bank_account_number")
            result["bank_account_last_four"] = account_number[-4:]

        logger.info("Payment data encrypted")
        return result

    # ------------------------------------------------------------------
    # Masking for display
    # ------------------------------------------------------------------

    def mask_sensitive_data(self, value: Optional[str], data_type: str = "default") -> Optional[str]:
        if value is None:
            return None
        value = str(value)

        if data_type == "phone":
            digits = re.sub(r"\D", "", value)
            return re.sub(r"(\d{3})\d{4}(\d{4})", r"\1****\2", digits)
        if data_type == "credit_card":
            digits = re.sub(r"\D", "", value)
            return "**** **** **** " + digits[-4:]
        if data_type == "address":
            parts = value.split(" ")
            return parts[0] + " " + "*" * max(len(value) - len(parts[0]) - 1, 3)

        if len(value) <= 4:
            return "*" * len(value)
        return value[:2] + "*" * (len(value) - 4) + value[-2:]

    # ------------------------------------------------------------------
    # Tokens, HMAC and hashes
    # ------------------------------------------------------------------

    def generate_payment_token(self, card_number: str) -> str:
        key = (self._key + "_payment_salt").encode("utf-8")
        return hmac.new(key, card_number.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify_payment_token(self, card_number: str, token: str) -> bool:
        return hmac.compare_digest(self.generate_payment_token(card_number), token)

    def generate_secure_token(self, length: int = 32) -> str:
        return secrets.token_hex(length)

    def generate_hmac(self, data: str) -> str:
        return hmac.new(self._key.encode("utf-8"), data.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify_hmac(self, data: str, signature: str) -> bool:
        return hmac.compare_digest(self.generate_hmac(data), signature)

    def hash_value(self, value: str) -> str:
        """One-way bcrypt hash for short secrets such as a CVV."""
        return get_password_hash(value)

    def verify_hash(self, value: str, hashed: str) -> bool:
        return verify_password(value, hashed)

    # ------------------------------------------------------------------
    # Typed PII
    # ------------------------------------------------------------------

    def encrypt_pii(self, value: str, pii_type: str) -> str:
        if pii_type not in self.PII_TYPES:
            raise SecurityException(f"Unsupported PII type: {pii_type}")
        try:
            return self.encrypt_value(value, f"pii:{pii_type}")
        except Exception as e:
            logger.error(f"PII encryption failed for type '{pii_type}': {e}")
            raise SecurityException(f"Failed to encrypt PII of type {pii_type}") from e

    def decrypt_pii(self, ciphertext: str, pii_type: str) -> str:
        if pii_type not in self.PII_TYPES:
            raise SecurityException(f"Unsupported PII type: {pii_type}")
        value = self.decrypt_value(ciphertext, f"pii:{pii_type}")
        if value is None:
            raise SecurityException(f"Failed to decrypt PII of type {pii_type}")
        return value

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def generate_encryption_report(self) -> Dict[str, Any]:
        return {
            "algorithm": "AES-256-GCM",
            "key_source": "encryption_key" if (self._key_material or settings.encryption_key) else "secret_key",
            "sensitive_fields": list(self.SENSITIVE_FIELDS),
            "pii_types": list(self.PII_TYPES),
            "payment_tokenization": "HMAC-SHA256",
            "generated_at": datetime.now(timezone.utc).isoformat(),
        }

    def rotate_encryption_keys(self) -> Dict[str, Any]:
        """Record a rotation request. Re-encryption of stored data is an offline job."""
        logger.warning("Encryption key rotation requested; re-encrypt stored data with the new key")
        return {
            "status": "rotation_logged",
            "requested_at": datetime.now(timezone.utc).isoformat(),
        }


encryption_service = EncryptionService()
