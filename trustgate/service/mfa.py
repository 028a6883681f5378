from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import secrets
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import quote, urlencode

from trustgate.logging import get_logger
from trustgate.service.errors import ConflictError, InvalidMfaCodeError, NotFoundError, ValidationError
from trustgate.storage.memory import MemoryStore
from trustgate.storage.models import Clock, Principal, utcnow

logger = get_logger(__name__)

RECOVERY_CODE_COUNT = 10
RECOVERY_CODE_LENGTH = 12


@dataclass(frozen=True)
class MfaSetup:
    secret: str
    otpauth_uri: str


def is_well_formed_totp(code: Optional[str], digits: int = 6) -> bool:
    return bool(code) and len(code) == digits and code.isdigit()


class SecondFactorVerifier:
    """RFC 6238 TOTP checks, single-use recovery codes and enrollment."""

    def __init__(
        self,
        store: MemoryStore,
        *,
        issuer: str = "trustgate",
        interval: int = 30,
        digits: int = 6,
        skew_steps: int = 1,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.interval = interval
        self.digits = digits
        self.skew_steps = skew_steps
        self._clock = clock

    # primitives
    @staticmethod
    def generate_secret() -> str:
        return base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")

    def generate_totp(self, secret: str, timestamp: float) -> str:
        padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return ""
        counter = int(timestamp // self.interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def verify_totp(self, secret: str, code: Optional[str]) -> bool:
        if not secret or not is_well_formed_totp(code, self.digits):
            return False
        now = self._clock().timestamp()
        matched = False
        for offset in range(-self.skew_steps, self.skew_steps + 1):
            generated = self.generate_totp(secret, now + offset * self.interval)
            # Check every step so timing does not reveal which one matched
            if generated and hmac.compare_digest(generated, code):
                matched = True
        return matched

    @staticmethod
    def generate_recovery_codes() -> List[str]:
        codes: set[str] = set()
        while len(codes) < RECOVERY_CODE_COUNT:
            codes.add(f"{secrets.randbelow(10**RECOVERY_CODE_LENGTH):0{RECOVERY_CODE_LENGTH}d}")
        return sorted(codes)

    def consume_recovery_code(self, principal_id: str, code: Optional[str]) -> bool:
        if not code or not code.strip():
            return False
        consumed = self.store.consume_recovery_code(principal_id, code)
        if consumed:
            logger.info(
                "recovery_code_consumed",
                principal_id=principal_id,
                remaining=self.store.recovery_code_count(principal_id),
            )
        return consumed

    def otpauth_uri(self, secret: str, account: str) -> str:
        label = quote(f"{self.issuer}:{account}")
        params = urlencode({"secret": secret, "issuer": self.issuer})
        return f"otpauth://totp/{label}?{params}"

    # enrollment
    def setup(self, principal: Principal) -> MfaSetup:
        if principal.mfa_enabled:
            raise ConflictError("MFA is already enabled")
        secret = self.generate_secret()
        self.store.set_mfa_secret(principal.id, secret, enabled=False, recovery_codes=[])
        logger.info("mfa_setup_started", principal_id=principal.id)
        return MfaSetup(secret=secret, otpauth_uri=self.otpauth_uri(secret, principal.username))

    def enable(self, principal: Principal, code: str) -> List[str]:
        cfg = self.store.get_mfa_secret(principal.id)
        if not cfg or not cfg.secret:
            raise NotFoundError("MFA setup has not been started")
        if cfg.enabled:
            raise ConflictError("MFA is already enabled")
        if not self.verify_totp(cfg.secret, code):
            logger.warning("mfa_enable_rejected", principal_id=principal.id)
            raise InvalidMfaCodeError()
        codes = self.generate_recovery_codes()
        self.store.set_mfa_secret(principal.id, cfg.secret, enabled=True, recovery_codes=codes)
        logger.info("mfa_enabled", principal_id=principal.id)
        return codes

    def disable(self, principal: Principal, code: str) -> None:
        cfg = self.store.get_mfa_secret(principal.id)
        if not cfg or not cfg.enabled:
            raise ValidationError("MFA is not enabled")
        if not self.verify_second_factor(principal, code):
            logger.warning("mfa_disable_rejected", principal_id=principal.id)
            raise InvalidMfaCodeError()
        self.store.clear_mfa(principal.id)
        logger.info("mfa_disabled", principal_id=principal.id)

    def regenerate_recovery_codes(self, principal: Principal, code: str) -> List[str]:
        """Replace every recovery code; only a current TOTP code authorizes it."""
        cfg = self.store.get_mfa_secret(principal.id)
        if not cfg or not cfg.enabled:
            raise ValidationError("MFA is not enabled")
        if not self.verify_totp(cfg.secret, code):
            raise InvalidMfaCodeError()
        codes = self.generate_recovery_codes()
        self.store.replace_recovery_codes(principal.id, codes)
        logger.info("recovery_codes_regenerated", principal_id=principal.id)
        return codes

    def verify_second_factor(self, principal: Principal, code: Optional[str]) -> bool:
        """TOTP first; anything else is tried once as a recovery code."""
        if not code:
            return False
        cfg = self.store.get_mfa_secret(principal.id)
        if not cfg or not cfg.enabled:
            return False
        if is_well_formed_totp(code, self.digits) and self.verify_totp(cfg.secret, code):
            return True
        return self.consume_recovery_code(principal.id, code)

    def status(self, principal_id: str) -> dict:
        cfg = self.store.get_mfa_secret(principal_id)
        return {
            "enabled": bool(cfg and cfg.enabled),
            "configured": bool(cfg and cfg.secret),
            "recovery_codes_remaining": self.store.recovery_code_count(principal_id),
        }
