from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from chronos.config import Settings
from chronos.logging import get_logger
from chronos.service.errors import TokenExpired, TokenInvalid

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    username: str
    token_type: str
    issued_at: int
    expires_at: int
    jti: str


class TokenService:
    """HS256 JWT signing and verification.

    Stateless: the output depends only on the secret, the claims and the
    injected clock. Every token gets a random ``jti`` so two tokens issued to
    the same user in the same second still differ.
    """

    def __init__(
        self, settings: Settings, *, clock: Optional[Callable[[], float]] = None
    ) -> None:
        self.settings = settings
        self._secret = settings.jwt_secret.encode()
        self._clock = clock or time.time

    def issue_access_token(self, user_id: str, login: str) -> str:
        return self._issue(user_id, login, ACCESS, self.settings.access_token_ttl_minutes)

    def issue_refresh_token(self, user_id: str, login: str) -> str:
        return self._issue(user_id, login, REFRESH, self.settings.refresh_token_ttl_minutes)

    def issue_pair(self, user_id: str, login: str) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access_token(user_id, login),
            refresh_token=self.issue_refresh_token(user_id, login),
        )

    def verify(self, token: str, *, expected_type: Optional[str] = None) -> TokenClaims:
        """Return the claims of a valid token.

        Raises:
            TokenInvalid: malformed token, wrong algorithm, bad signature,
                missing claims or a token type other than ``expected_type``.
            TokenExpired: the signature is valid but ``exp`` has passed.
        """
        payload = self._decode(token)
        try:
            claims = TokenClaims(
                user_id=str(payload["userId"]),
                username=str(payload["username"]),
                token_type=str(payload["token_type"]),
                issued_at=int(payload["iat"]),
                expires_at=int(payload["exp"]),
                jti=str(payload["jti"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalid() from exc
        if expected_type and claims.token_type != expected_type:
            logger.warning(
                "jwt_wrong_token_type", expected=expected_type, actual=claims.token_type
            )
            raise TokenInvalid()
        if claims.expires_at <= self._clock():
            raise TokenExpired()
        return claims

    def _issue(self, user_id: str, login: str, token_type: str, ttl_minutes: int) -> str:
        now = int(self._clock())
        payload = {
            "userId": user_id,
            "username": login,
            "token_type": token_type,
            "jti": uuid.uuid4().hex,
            "iat": now,
            "exp": now + ttl_minutes * 60,
        }
        return self._encode(payload)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode(self, token: str) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise TokenInvalid()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError as exc:
            raise TokenInvalid() from exc

        # reject anything but HS256, including "none"
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalid() from exc
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalid()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalid()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalid() from exc
        if not isinstance(payload, dict):
            raise TokenInvalid()
        return payload
