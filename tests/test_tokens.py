"""Unit tests for sealed session tokens."""
import time

import pytest

from app.utils.encryption import ACCESS, REFRESH, TokenError, open_token, seal_token


class TestSealedTokens:

    def test_round_trip_carries_subject_and_type(self):
        token = seal_token("user-1", ACCESS, 60)
        payload = open_token(token, ACCESS)
        assert payload["sub"] == "user-1"
        assert payload["type"] == ACCESS
        assert payload["exp"] > time.time()

    def test_type_discriminator_enforced(self):
        token = seal_token("user-1", REFRESH, 60)
        with pytest.raises(TokenError, match="wrong_token_type"):
            open_token(token, ACCESS)

    def test_expired_token_rejected(self):
        token = seal_token("user-1", ACCESS, -1)
        with pytest.raises(TokenError, match="token_expired"):
            open_token(token, ACCESS)

    def test_tampered_token_rejected(self):
        token = seal_token("user-1", ACCESS, 60)
        tampered = token[:-4] + ("AAAA" if not token.endswith("AAAA") else "BBBB")
        with pytest.raises(TokenError):
            open_token(tampered, ACCESS)

    def test_non_ascii_input_rejected(self):
        with pytest.raises(TokenError):
            open_token("トークン", ACCESS)
