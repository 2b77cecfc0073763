from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol, Tuple

from tenantcrm.config import Settings
from tenantcrm.logging import get_logger
from tenantcrm.service.errors import TokenExpired, TokenInvalid
from tenantcrm.storage.models import RefreshTokenRecord, User

logger = get_logger(__name__)

REFRESH_TOKEN_BYTES = 64


class TokenStore(Protocol):
    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...

    def list_refresh_candidates(self, user_id: str, tenant_id: str) -> list[RefreshTokenRecord]: ...

    def rotate_refresh_token(
        self, token_id: str, *, tenant_id: str, new_token_hash: str, ttl_minutes: int
    ) -> Optional[RefreshTokenRecord]: ...

    def revoke_refresh_token(self, token_id: str, tenant_id: str) -> bool: ...

    def revoke_refresh_family(self, family_id: str, tenant_id: str) -> int: ...

    def revoke_user_refresh_tokens(self, user_id: str, tenant_id: str) -> int: ...

    def revoke_all_for_user(self, user_id: str) -> Optional[int]: ...


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    tenant_id: Optional[str]
    role: str
    token_version: int
    jti: str
    expires_at: datetime

    @property
    def remaining_seconds(self) -> int:
        return max(0, int((self.expires_at - datetime.now(timezone.utc)).total_seconds()))


class TokenService:
    """Signs access tokens and manages opaque, hashed refresh tokens.

    Access tokens are HS256 JWTs checked statelessly; revocation happens by
    bumping ``User.token_version``. Refresh tokens are random bytes whose
    keyed digest is the only thing persisted.
    """

    def __init__(self, store: TokenStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._secret = settings.jwt_secret.encode()
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=30)

    # -- JWT encoding -----------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (ValueError, AttributeError):
            raise TokenInvalid(detail={"reason": "malformed"})

        # Pin the algorithm to prevent alg confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise TokenInvalid(detail={"reason": "header_decode_failed"})
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise TokenInvalid(detail={"reason": "invalid_algorithm"})

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise TokenInvalid(detail={"reason": "bad_signature"})
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise TokenInvalid(detail={"reason": "payload_decode_failed"})
        if not isinstance(payload, dict):
            raise TokenInvalid(detail={"reason": "payload_not_object"})
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalid(detail={"reason": "issuer"})
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenInvalid(detail={"reason": "audience"})
        if payload.get("typ") != "access":
            raise TokenInvalid(detail={"reason": "token_type"})
        return payload

    # -- access tokens ----------------------------------------------------

    def issue(self, user: User) -> str:
        """Issue a signed access token for ``user``."""
        now = int(time.time())
        payload = {
            "sub": user.id,
            "tenant_id": user.tenant_id,
            "role": user.role,
            "token_version": user.token_version,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + self.settings.access_token_ttl_minutes * 60,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "typ": "access",
        }
        return self._encode_jwt(payload)

    def verify(self, token: str, *, allow_expired: bool = False) -> AccessClaims:
        """Verify signature and claims.

        Raises ``TokenExpired`` or ``TokenInvalid``; both render the same
        client message. ``allow_expired`` accepts a correctly signed token
        past its expiry, which logout and refresh use to identify the caller.
        """
        payload = self._decode_jwt(token)
        try:
            exp_ts = float(payload["exp"])
            claims = AccessClaims(
                user_id=str(payload["sub"]),
                tenant_id=payload.get("tenant_id"),
                role=str(payload["role"]),
                token_version=int(payload["token_version"]),
                jti=str(payload["jti"]),
                expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid(detail={"reason": "claims"})
        if not allow_expired and exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            raise TokenExpired(detail={"reason": "expired"})
        return claims

    # -- refresh tokens ---------------------------------------------------

    def hash_refresh(self, raw_token: str) -> str:
        return hmac.new(self._secret, raw_token.encode(), hashlib.sha256).hexdigest()

    def issue_refresh(
        self, user_id: str, tenant_id: str, *, family_id: Optional[str] = None
    ) -> str:
        """Persist the digest of a fresh refresh token; return the raw value once."""
        raw = secrets.token_hex(REFRESH_TOKEN_BYTES)
        record = RefreshTokenRecord.new(
            user_id,
            tenant_id,
            self.hash_refresh(raw),
            ttl_minutes=self.settings.refresh_token_ttl_minutes,
            family_id=family_id,
        )
        self.store.create_refresh_token(record)
        return raw

    def find_refresh(
        self, raw_token: str, user_id: str, tenant_id: str
    ) -> Optional[RefreshTokenRecord]:
        """Return the stored record matching ``raw_token`` in any state."""
        if not raw_token:
            return None
        presented = self.hash_refresh(raw_token)
        match = None
        for candidate in self.store.list_refresh_candidates(user_id, tenant_id):
            # Compare every candidate so timing does not reveal the position
            if hmac.compare_digest(candidate.token_hash, presented) and match is None:
                match = candidate
        return match

    def consume_refresh(
        self, raw_token: str, user_id: str, tenant_id: str
    ) -> Optional[RefreshTokenRecord]:
        """Return the matching record only while it is active and unexpired."""
        record = self.find_refresh(raw_token, user_id, tenant_id)
        if record is None or record.is_revoked or record.is_expired():
            return None
        return record

    def rotate_refresh(self, record: RefreshTokenRecord) -> Optional[Tuple[str, RefreshTokenRecord]]:
        """Atomically revoke ``record`` and mint its successor.

        Returns None when a concurrent request already rotated it.
        """
        raw = secrets.token_hex(REFRESH_TOKEN_BYTES)
        successor = self.store.rotate_refresh_token(
            record.id,
            tenant_id=record.tenant_id,
            new_token_hash=self.hash_refresh(raw),
            ttl_minutes=self.settings.refresh_token_ttl_minutes,
        )
        if successor is None:
            return None
        return raw, successor

    def revoke_refresh(self, record: RefreshTokenRecord) -> bool:
        return self.store.revoke_refresh_token(record.id, record.tenant_id)

    def revoke_family(self, record: RefreshTokenRecord) -> int:
        revoked = self.store.revoke_refresh_family(record.family_id, record.tenant_id)
        logger.warning(
            "refresh_family_revoked",
            user_id=record.user_id,
            tenant_id=record.tenant_id,
            family_id=record.family_id,
            revoked=revoked,
        )
        return revoked

    def revoke_for_tenant(self, user_id: str, tenant_id: str) -> int:
        return self.store.revoke_user_refresh_tokens(user_id, tenant_id)

    def revoke_all_for_user(self, user_id: str) -> Optional[int]:
        """Bump the token version and revoke every refresh token of the user."""
        version = self.store.revoke_all_for_user(user_id)
        if version is not None:
            logger.info("user_tokens_revoked", user_id=user_id, token_version=version)
        return version
