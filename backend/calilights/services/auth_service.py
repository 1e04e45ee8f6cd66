# backend/calilights/services/auth_service.py
"""
Caller identity for the mission engine.

Accounts live outside this service. What remains here is verifying the
bearer tokens that name the acting user, minting tokens for local runs and
tests, and checking the shared secret the periodic sweep triggers present.

Settings read:
    - JWT_SECRET_KEY / JWT_ALGORITHM: signing material for bearer tokens
    - JWT_ACCESS_TOKEN_EXPIRE_MINUTES: lifetime of minted tokens
    - CRON_SECRET: value expected in the X-Cron-Secret header
"""

import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from ..config import settings


class AuthService:
    """Bearer token codec plus the sweep trigger check."""

    def __init__(self):
        self._logger = logging.getLogger("calilights.auth")
        self.jwt_secret = settings.jwt_secret_key
        self.jwt_algorithm = settings.jwt_algorithm
        self.access_token_expire = timedelta(minutes=settings.jwt_access_token_expire_minutes)

    # =========================================================================
    # BEARER TOKENS
    # =========================================================================

    def create_access_token(
        self,
        user_id: str,
        additional_claims: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Mint a token naming ``user_id`` as the acting principal.

        Claims are ``sub``, ``type="access"``, ``iat`` and ``exp``;
        ``additional_claims`` are merged last and may override them.
        """
        issued = datetime.now(timezone.utc)
        claims = {
            "sub": str(user_id),
            "type": "access",
            "iat": issued,
            "exp": issued + self.access_token_expire,
        }
        if additional_claims:
            claims.update(additional_claims)

        self._logger.debug(f"Minted token for principal {user_id}")
        return jwt.encode(claims, self.jwt_secret, algorithm=self.jwt_algorithm)

    def decode_token(self, token: str) -> Dict[str, Any]:
        """Verify signature and expiry; PyJWT errors propagate to the caller."""
        try:
            return jwt.decode(token, self.jwt_secret, algorithms=[self.jwt_algorithm])
        except jwt.ExpiredSignatureError:
            self._logger.info("Rejected expired bearer token")
            raise
        except jwt.InvalidTokenError as e:
            self._logger.warning(f"Rejected bearer token: {e}")
            raise

    def verify_token_type(self, payload: Dict[str, Any], expected_type: str) -> bool:
        if payload.get("type") == expected_type:
            return True
        self._logger.warning(f"Bearer token carries type {payload.get('type')!r}, wanted {expected_type!r}")
        return False

    # =========================================================================
    # SWEEP TRIGGER SECRET
    # =========================================================================

    def verify_cron_secret(self, presented: Optional[str]) -> bool:
        """
        Constant-time check of the sweep trigger secret.

        An unconfigured secret rejects every caller.
        """
        expected = settings.cron_secret
        if not expected:
            self._logger.warning("CRON_SECRET is not configured; rejecting sweep trigger")
            return False
        if not presented:
            return False
        return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


auth_service = AuthService()
