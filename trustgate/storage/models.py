from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, FrozenSet, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PrincipalStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    BLOCKED = "BLOCKED"


class Role(str, Enum):
    USER = "ROLE_USER"
    MODERATOR = "ROLE_MODERATOR"
    ADMIN = "ROLE_ADMIN"


class TokenKind(str, Enum):
    SESSION = "session"
    RESET = "reset"


@dataclass
class Principal:
    id: str
    username: str
    email: str
    roles: FrozenSet[Role] = frozenset({Role.USER})
    status: PrincipalStatus = PrincipalStatus.ACTIVE
    status_reason: Optional[str] = None
    failed_attempts: int = 0
    last_failed_at: Optional[datetime] = None
    account_expires_at: Optional[datetime] = None
    mfa_enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_admin(self) -> bool:
        return Role.ADMIN in self.roles

    def is_expired(self, now: datetime) -> bool:
        return self.account_expires_at is not None and self.account_expires_at < now


@dataclass
class MFAConfig:
    principal_id: str
    secret: str
    enabled: bool = False
    # keyed digests, never the plaintext codes
    recovery_codes: FrozenSet[str] = frozenset()
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class SessionRecord:
    principal_id: str
    token: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class RevocationEntry:
    token: str
    expires_at: datetime
