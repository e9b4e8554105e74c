from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Sequence

from userservice.logging import get_logger

logger = get_logger(__name__)

_ALGORITHM = "HS256"

_SEGMENT_RE = re.compile(r"[A-Za-z0-9_-]+")


class TokenError(Exception):
    """Base class for access token failures."""


class MalformedToken(TokenError):
    pass


class SignatureMismatch(TokenError):
    pass


class TokenExpired(TokenError):
    pass


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    roles: tuple[str, ...]
    issued_at: datetime
    expires_at: datetime
    token_type: str = "access"
    jti: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _split(token: str) -> tuple[str, str, str]:
    if not isinstance(token, str) or not token:
        raise MalformedToken("token is empty")
    parts = token.split(".")
    if len(parts) != 3 or not all(parts):
        raise MalformedToken("token must have three segments")
    if not all(_SEGMENT_RE.fullmatch(part) for part in parts):
        raise MalformedToken("token segments must be base64url")
    return parts[0], parts[1], parts[2]


def _load_json_segment(segment: str, what: str) -> dict[str, Any]:
    try:
        value = json.loads(_decode_segment(segment))
    except (ValueError, TypeError) as exc:
        raise MalformedToken(f"{what} is not valid base64url JSON") from exc
    if not isinstance(value, dict):
        raise MalformedToken(f"{what} must be a JSON object")
    return value


class TokenCodec:
    """Issues and verifies HS256-signed JWT access tokens.

    Tokens are self-contained: verification only needs the shared secret and
    the clock, never storage. ``clock`` returns an aware UTC datetime and may
    be replaced in tests to simulate time passing.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        clock: Optional[Callable[[], datetime]] = None,
        leeway: timedelta = timedelta(0),
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self._clock = clock or _utcnow
        self._leeway = leeway

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def issue(
        self,
        subject: str,
        roles: Sequence[str],
        ttl: timedelta,
        *,
        token_type: str = "access",
    ) -> str:
        if ttl <= timedelta(0):
            raise ValueError("token ttl must be positive")
        now = self._clock()
        issued_at = int(now.timestamp())
        # Round up so the token never lapses before ttl has fully elapsed
        expires_at = math.ceil(now.timestamp() + ttl.total_seconds())
        payload = {
            "iss": self.issuer,
            "sub": subject,
            "roles": list(roles),
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": issued_at,
            "exp": expires_at,
        }
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> TokenClaims:
        header_b64, payload_b64, sig_b64 = _split(token)
        header = _load_json_segment(header_b64, "header")
        # Only HS256 is accepted; anything else would allow algorithm confusion
        if header.get("alg") != _ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise SignatureMismatch("unsupported signing algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise SignatureMismatch("signature does not match")

        payload = _load_json_segment(payload_b64, "payload")
        if payload.get("iss") != self.issuer:
            raise SignatureMismatch("token issued by a different authority")
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise MalformedToken("token has no subject")
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", exp_ts))
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedToken("token has no usable expiry") from exc

        now_ts = self._clock().timestamp()
        if exp_ts <= now_ts - self._leeway.total_seconds():
            raise TokenExpired("token expired")

        roles = payload.get("roles") or []
        if isinstance(roles, str):
            roles = [roles]
        return TokenClaims(
            subject=subject,
            roles=tuple(str(role) for role in roles),
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            token_type=str(payload.get("token_type", "access")),
            jti=payload.get("jti"),
            raw=payload,
        )

    def extract(self, token: str, claim: str) -> Any:
        """Read a claim without checking signature or expiry.

        Only for display and logging; call ``verify`` before trusting the value.
        """
        _, payload_b64, _ = _split(token)
        return _load_json_segment(payload_b64, "payload").get(claim)
