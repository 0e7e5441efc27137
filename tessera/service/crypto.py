"""Swappable capability interfaces: clock, password hashing, token signing, OTP.

Services receive these as constructor arguments so tests can substitute
deterministic doubles and algorithms can be migrated without touching the
services.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
from datetime import datetime, timezone
from typing import Any, Optional, Protocol
from urllib.parse import quote, urlencode

from argon2 import PasswordHasher as Argon2Hasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tessera.config import MIN_SIGNING_SECRET_BYTES
from tessera.logging import get_logger

logger = get_logger(__name__)


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class PasswordHasher(Protocol):
    def hash(self, password: str) -> str: ...

    def verify(self, password_hash: str, password: str) -> bool: ...

    def needs_rehash(self, password_hash: str) -> bool: ...


class Argon2PasswordHasher:
    """Argon2id hashing."""

    def __init__(self, **params: Any) -> None:
        self._hasher = Argon2Hasher(type=Type.ID, **params)

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_invalid")
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True


class TokenSigner(Protocol):
    def sign(self, claims: dict[str, Any]) -> str: ...

    def verify(self, token: str) -> Optional[dict[str, Any]]: ...


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class HmacTokenSigner:
    """HS256 compact JWS.

    ``verify`` returns the claims when the header and signature check out and
    ``None`` otherwise. It does not look at expiry or any other claim.
    """

    ALGORITHM = "HS256"

    def __init__(self, secret: str) -> None:
        if not secret or len(secret.encode()) < MIN_SIGNING_SECRET_BYTES:
            raise ValueError(
                f"signing secret must be at least {MIN_SIGNING_SECRET_BYTES} bytes"
            )
        self._key = secret.encode()

    def _signature(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def sign(self, claims: dict[str, Any]) -> str:
        header = {"alg": self.ALGORITHM, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(claims, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def verify(self, token: str) -> Optional[dict[str, Any]]:
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != self.ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        return payload


class OTPGenerator(Protocol):
    interval: int

    def generate_secret(self) -> str: ...

    def code_at(self, secret: str, timestamp: float) -> str: ...

    def match_step(
        self, secret: str, code: str, at: datetime, drift_steps: int
    ) -> Optional[int]: ...

    def provisioning_uri(self, secret: str, account_name: str, issuer: str) -> str: ...


class TotpGenerator:
    """RFC 6238 TOTP (HMAC-SHA1), compatible with common authenticator apps."""

    def __init__(self, *, digits: int = 6, interval: int = 30) -> None:
        self.digits = digits
        self.interval = interval

    def generate_secret(self) -> str:
        # 160-bit secret, base32 without padding
        return base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")

    def code_at(self, secret: str, timestamp: float) -> str:
        return self._code_for_step(secret, int(timestamp // self.interval))

    def _code_for_step(self, secret: str, step: int) -> str:
        padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except (ValueError, TypeError):
            logger.warning("totp_secret_invalid")
            return ""
        counter = step.to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def match_step(
        self, secret: str, code: str, at: datetime, drift_steps: int
    ) -> Optional[int]:
        """Return the time step ``code`` belongs to, or None if it matches none.

        Steps from ``-drift_steps`` to ``+drift_steps`` around ``at`` are tried.
        """
        candidate = (code or "").strip().replace(" ", "")
        if len(candidate) != self.digits or not candidate.isdigit():
            return None
        current = int(at.timestamp() // self.interval)
        for step in range(current - drift_steps, current + drift_steps + 1):
            generated = self._code_for_step(secret, step)
            if generated and hmac.compare_digest(generated, candidate):
                return step
        return None

    def provisioning_uri(self, secret: str, account_name: str, issuer: str) -> str:
        label = quote(f"{issuer}:{account_name}", safe=":@")
        query = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": self.digits,
                "period": self.interval,
            },
            quote_via=quote,
        )
        return f"otpauth://totp/{label}?{query}"
