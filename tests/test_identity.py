"""
Tests for credential and wallet-signature verification.
"""
import pytest

from dope_auth.identity import (
    hash_personal_message,
    keccak256,
    recover_address,
    to_checksum_address,
    verify_personal_signature,
    verify_session_credential_signature,
)

from tests.fakes import Notarizer


class TestSessionCredential:
    def test_valid_raw_signature(self, notarizer):
        credential = notarizer.issue({"user_id": "u1", "organization_id": "o1"})
        assert verify_session_credential_signature(credential, notarizer.public_hex) is True

    def test_valid_der_signature(self, notarizer):
        credential = notarizer.issue({"user_id": "u1"}, raw_signature=False)
        assert verify_session_credential_signature(credential, notarizer.public_hex) is True

    def test_other_key_rejected(self, notarizer):
        credential = Notarizer().issue({"user_id": "u1"})
        assert verify_session_credential_signature(credential, notarizer.public_hex) is False

    def test_tampered_payload_rejected(self, notarizer):
        credential = notarizer.issue({"user_id": "u1"})
        h, _, s = credential.split(".")
        forged = notarizer.issue({"user_id": "admin"}).split(".")[1]
        assert verify_session_credential_signature(f"{h}.{forged}.{s}", notarizer.public_hex) is False

    def test_garbage_rejected(self, notarizer):
        assert verify_session_credential_signature("not-a-token", notarizer.public_hex) is False

    def test_missing_key_is_deployment_error(self, notarizer):
        with pytest.raises(RuntimeError):
            verify_session_credential_signature(notarizer.issue({}), "")


class TestEvm:
    def test_keccak_empty(self):
        assert keccak256(b"").hex() == "c5d2460186f7233c927e7db2dcc703c0e500b653ca82273b7bfad8045d85a470"

    def test_checksum_known_vector(self):
        # EIP-55 reference vector
        addr = "0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed"
        assert to_checksum_address(addr) == "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"

    def test_checksum_rejects_bad_input(self):
        for bad in ("", "0x123", "0x" + "g" * 40):
            with pytest.raises(ValueError):
                to_checksum_address(bad)

    def test_personal_hash_prefix(self):
        expected = keccak256(b"\x19Ethereum Signed Message:\n5hello")
        assert hash_personal_message("hello") == expected

    def test_recover_signer(self, evm_signer):
        sig = evm_signer.sign("login to dope")
        assert recover_address("login to dope", sig) == evm_signer.address
        assert verify_personal_signature(evm_signer.address, "login to dope", sig)

    def test_recover_accepts_raw_recovery_id(self, evm_signer):
        sig = bytes.fromhex(evm_signer.sign("hi")[2:])
        zero_based = sig[:64] + bytes([sig[64] - 27])
        assert recover_address("hi", zero_based.hex()) == evm_signer.address

    def test_wrong_message_does_not_verify(self, evm_signer):
        sig = evm_signer.sign("one")
        assert not verify_personal_signature(evm_signer.address, "two", sig)

    def test_malformed_signature(self):
        assert recover_address("hi", "0x1234") is None
        assert recover_address("hi", "0x" + "00" * 64 + "05") is None
