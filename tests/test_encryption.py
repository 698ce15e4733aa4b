"""Tests for field-level encryption, tokenization and masking."""

import pytest

from foodhub.services.encryption_service import EncryptionService, SecurityException


@pytest.fixture
def service():
    return EncryptionService("unit-test-key-material")


class TestValueEncryption:
    def test_round_trip(self, service):
        ciphertext = service.encrypt_value("+15550001234", "customer.phone")
        assert ciphertext != "+15550001234"
        assert service.decrypt_value(ciphertext, "customer.phone") == "+15550001234"

    def test_ciphertexts_are_randomized(self, service):
        assert service.encrypt_value("same", "ctx") != service.encrypt_value("same", "ctx")

    def test_wrong_context_returns_none(self, service):
        ciphertext = service.encrypt_value("42 Elm Street", "customer.address")
        assert service.decrypt_value(ciphertext, "customer.phone") is None

    def test_wrong_key_returns_none(self, service):
        ciphertext = service.encrypt_value("value", "ctx")
        assert EncryptionService("another-key").decrypt_value(ciphertext, "ctx") is None

    def test_corrupt_ciphertext_returns_none(self, service):
        assert service.decrypt_value("not-valid", "ctx") is None


class TestRecordEncryption:
    def test_detects_sensitive_fields(self, service):
        assert service.is_sensitive_field("phone")
        assert service.is_sensitive_field("api_token")
        assert service.is_sensitive_field("Stripe_Secret")
        assert not service.is_sensitive_field("first_name")

    def test_encrypt_and_decrypt_record(self, service):
        record = {"first_name": "Ada", "phone": "+15550001234", "address": "", "personal_notes": None}
        encrypted = service.encrypt_sensitive_data(record)
        assert encrypted["first_name"] == "Ada"
        assert encrypted["phone"] != record["phone"]
        assert encrypted["address"] == ""
        assert encrypted["personal_notes"] is None
        assert service.decrypt_sensitive_data(encrypted) == record

    def test_explicit_field_list(self, service):
        encrypted = service.encrypt_sensitive_data({"nickname": "Ace", "phone": "1"}, ["nickname"])
        assert encrypted["phone"] == "1"
        assert service.decrypt_value(encrypted["nickname"], "nickname") == "Ace"

    def test_failed_decryption_becomes_none(self, service):
        decrypted = service.decrypt_sensitive_data({"phone": "garbage"})
        assert decrypted["phone"] is None

    def test_payment_data(self, service):
        result = service.encrypt_payment_data({
            "credit_card_number": "4111 1111 1111 1234",
            "cvv": "123",
            "bank_account_number": "9876543210",
            "holder": "Ada Lovelace",
        })
        assert "credit_card_number" not in result
        assert "cvv" not in result
        assert "bank_account_number" not in result
        assert service.decrypt_value(result["credit_card_last_four"], "credit_card_last_four") == "1234"
        assert service.verify_payment_token("4111111111111234", result["credit_card_token"])
        assert service.verify_hash("123", result["cvv_hash"])
        assert result["bank_account_last_four"] == "3210"
        assert result["holder"] == "Ada Lovelace"


class TestMasking:
    def test_phone(self, service):
        assert service.mask_sensitive_data("+1 555 123 4567", "phone") == "155****4567"

    def test_credit_card(self, service):
        assert service.mask_sensitive_data("4111-1111-1111-1234", "credit_card") == "**** **** **** 1234"

    def test_address(self, service):
        assert service.mask_sensitive_data("42 Elm Street", "address") == "42 **********"

    def test_default(self, service):
        assert service.mask_sensitive_data("secretvalue") == "se*******ue"
        assert service.mask_sensitive_data("abc") == "***"
        assert service.mask_sensitive_data(None) is None


class TestTokensAndHashes:
    def test_payment_token_is_deterministic(self, service):
        assert service.generate_payment_token("4111") == service.generate_payment_token("4111")
        assert not service.verify_payment_token("4112", service.generate_payment_token("4111"))

    def test_hmac(self, service):
        signature = service.generate_hmac("payload")
        assert service.verify_hmac("payload", signature)
        assert not service.verify_hmac("payload!", signature)

    def test_salted_hash(self, service):
        first, second = service.hash_value("1234"), service.hash_value("1234")
        assert first != second
        assert service.verify_hash("1234", first)
        assert not service.verify_hash("4321", first)
        assert not service.verify_hash("1234", "no-separator")

    def test_cvv_hash_is_bcrypt(self, service):
        hashed = service.encrypt_payment_data({"cvv": "731"})["cvv_hash"]
        assert hashed.startswith("$2b$")
        assert "731" not in hashed
        assert service.verify_hash("731", hashed)
        assert not any(service.verify_hash(f"{n:03d}", hashed) for n in range(725, 731))

    def test_secure_token_length(self, service):
        assert len(service.generate_secure_token(16)) == 32


class TestPII:
    def test_round_trip(self, service):
        ciphertext = service.encrypt_pii("D1234567", "driver_license")
        assert service.decrypt_pii(ciphertext, "driver_license") == "D1234567"

    def test_type_is_bound(self, service):
        ciphertext = service.encrypt_pii("D1234567", "driver_license")
        with pytest.raises(SecurityException):
            service.decrypt_pii(ciphertext, "passport")

    def test_unsupported_type(self, service):
        with pytest.raises(SecurityException):
            service.encrypt_pii("x", "shoe_size")


class TestReporting:
    def test_report(self, service):
        report = service.generate_encryption_report()
        assert report["algorithm"] == "AES-256-GCM"
        assert report["key_source"] == "encryption_key"
        assert "phone" in report["sensitive_fields"]

    def test_default_key_source(self):
        assert EncryptionService().generate_encryption_report()["key_source"] == "secret_key"

    def test_rotation_is_logged(self, service):
        assert service.rotate_encryption_keys()["status"] == "rotation_logged"
