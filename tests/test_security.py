"""Tests for token verification and credential encryption."""

import uuid
from datetime import timedelta

import pytest

from conftest import make_token
from linkloop.core.encryption import (
    decrypt_credential,
    decrypt_payload,
    encrypt_credential,
    encrypt_payload,
)
from linkloop.core.security import (
    TokenData,
    create_state_token,
    decode_access_token,
    verify_state_token,
)


class TestAccessTokens:
    def test_valid_token(self):
        account_id = uuid.uuid4()
        payload = decode_access_token(make_token(account_id, "member", "Alex"))

        data = TokenData(payload)
        assert data.account_id == account_id
        assert data.role == "member"
        assert data.name == "Alex"

    def test_expired_token(self):
        token = make_token(uuid.uuid4(), expires_in=timedelta(seconds=-5))
        assert decode_access_token(token) is None

    def test_wrong_type(self):
        assert decode_access_token(make_token(uuid.uuid4(), token_type="refresh")) is None

    def test_tampered_token(self):
        token = make_token(uuid.uuid4())
        assert decode_access_token(token[:-2] + "xx") is None


class TestStateTokens:
    def test_round_trip(self):
        account_id = uuid.uuid4()
        state = create_state_token(account_id, "dexcom_oauth", 10)
        assert verify_state_token(state, account_id, "dexcom_oauth")

    def test_other_account(self):
        state = create_state_token(uuid.uuid4(), "dexcom_oauth", 10)
        assert not verify_state_token(state, uuid.uuid4(), "dexcom_oauth")

    def test_other_purpose(self):
        account_id = uuid.uuid4()
        state = create_state_token(account_id, "dexcom_oauth", 10)
        assert not verify_state_token(state, account_id, "password_reset")

    def test_expired(self):
        account_id = uuid.uuid4()
        state = create_state_token(account_id, "dexcom_oauth", -1)
        assert not verify_state_token(state, account_id, "dexcom_oauth")

    def test_access_token_is_not_a_state(self):
        account_id = uuid.uuid4()
        assert not verify_state_token(make_token(account_id), account_id, "dexcom_oauth")


class TestEncryption:
    def test_ciphertext_hides_plaintext(self):
        encrypted = encrypt_credential("hunter2")

        assert "hunter2" not in encrypted
        assert decrypt_credential(encrypted) == "hunter2"

    def test_payload(self):
        payload = {"access_token": "a", "refresh_token": "r"}
        assert decrypt_payload(encrypt_payload(payload)) == payload

    def test_corrupted_data(self):
        with pytest.raises(ValueError):
            decrypt_credential("not-a-fernet-token")
