"""
Bearer token codec and sweep trigger secret checks.
"""

from datetime import timedelta
from unittest.mock import patch

import jwt
import pytest
from calilights.config import settings
from calilights.services.auth_service import AuthService, auth_service


@pytest.fixture
def auth_service_instance():
    return AuthService()


class TestConfiguration:

    def test_singleton_instance(self):
        assert isinstance(auth_service, AuthService)

    def test_configuration_loaded(self, auth_service_instance):
        assert auth_service_instance.jwt_secret == settings.jwt_secret_key
        assert auth_service_instance.jwt_algorithm == settings.jwt_algorithm


class TestAccessTokens:
    """Minting and verifying bearer tokens."""

    def test_token_round_trip_claims(self, auth_service_instance):
        user_id = "123e4567-e89b-12d3-a456-426614174000"
        token = auth_service_instance.create_access_token(user_id=user_id)

        payload = auth_service_instance.decode_token(token)
        assert payload["sub"] == user_id
        assert payload["type"] == "access"
        assert payload["exp"] > payload["iat"]

    def test_additional_claims(self, auth_service_instance):
        token = auth_service_instance.create_access_token(
            user_id="user-123", additional_claims={"chain": "night-owls"}
        )
        assert auth_service_instance.decode_token(token)["chain"] == "night-owls"

    def test_decode_invalid_token(self, auth_service_instance):
        with pytest.raises(jwt.InvalidTokenError):
            auth_service_instance.decode_token("invalid.token.here")

    def test_decode_expired_token(self, auth_service_instance):
        with patch.object(auth_service_instance, "access_token_expire", timedelta(seconds=-5)):
            token = auth_service_instance.create_access_token(user_id="user-123")

        with pytest.raises(jwt.ExpiredSignatureError):
            auth_service_instance.decode_token(token)

    def test_foreign_signature_rejected(self, auth_service_instance):
        token = jwt.encode({"sub": "user-123", "type": "access"}, "wrong_secret_key_12345", algorithm="HS256")
        with pytest.raises(jwt.InvalidTokenError):
            auth_service_instance.decode_token(token)

    def test_verify_token_type(self, auth_service_instance):
        payload = auth_service_instance.decode_token(
            auth_service_instance.create_access_token(user_id="user-123")
        )
        assert auth_service_instance.verify_token_type(payload, "access") is True
        assert auth_service_instance.verify_token_type(payload, "refresh") is False
        assert auth_service_instance.verify_token_type({}, "access") is False


class TestCronSecret:
    """X-Cron-Secret matching."""

    def test_matching_secret(self, auth_service_instance):
        assert auth_service_instance.verify_cron_secret(settings.cron_secret) is True

    def test_wrong_or_missing_secret(self, auth_service_instance):
        assert auth_service_instance.verify_cron_secret("nope") is False
        assert auth_service_instance.verify_cron_secret(None) is False
        assert auth_service_instance.verify_cron_secret("") is False

    def test_unconfigured_secret_rejects_everyone(self, auth_service_instance):
        with patch.object(settings, "cron_secret", None):
            assert auth_service_instance.verify_cron_secret("anything") is False
