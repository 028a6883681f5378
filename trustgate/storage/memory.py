from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import secrets
import tempfile
import threading
import uuid
from contextlib import contextmanager
from dataclasses import fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from trustgate.logging import get_logger
from trustgate.storage.errors import ConstraintViolation, StoreUnavailable
from trustgate.storage.models import (
    MFAConfig,
    Principal,
    PrincipalStatus,
    RevocationEntry,
    Role,
    SessionRecord,
    utcnow,
)

_MUTABLE_PRINCIPAL_FIELDS = frozenset(
    f.name for f in fields(Principal) if f.name not in {"id", "created_at"}
)


class MemoryStore:
    """Thread-safe in-memory credential store with optional JSON persistence.

    Holds principals, password records, MFA material, the live session row of
    each principal and the revocation set. Every public method is atomic with
    respect to the others; returned entities are copies, so callers change
    state only through ``save`` and the dedicated mutators.
    When persistence is on, a mutation whose write fails is rolled back and
    surfaces as ``StoreUnavailable``; memory never runs ahead of disk.
    """

    def __init__(
        self,
        fs_root: str | None = None,
        *,
        mfa_encryption_key: str | None = None,
        persist: bool = False,
    ) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.mfa_configs: Dict[str, MFAConfig] = {}
        self.sessions: Dict[str, SessionRecord] = {}
        self._session_tokens: Dict[str, str] = {}
        self.revocations: Dict[str, RevocationEntry] = {}
        # RLock so mutators can call helpers that also take the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        self.persist = persist and self.fs_root is not None
        material = self._resolve_key_material(mfa_encryption_key)
        self._mfa_cipher = Fernet(self._derive_cipher_key(material))
        self._recovery_key = hashlib.sha256(b"recovery-codes:" + material.encode()).digest()
        if self.persist:
            self._load_state()

    # key material
    def _resolve_key_material(self, key_material: str | None) -> str:
        material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        if material:
            return material
        self.logger.warning(
            "mfa_key_material_missing",
            message="Using an ephemeral MFA key; enrolled secrets will not survive a restart",
        )
        return secrets.token_urlsafe(64)

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _encrypt_mfa_secret(self, secret: str) -> str:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: str) -> str:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            return ""

    def recovery_code_digest(self, code: str) -> str:
        return hmac.new(self._recovery_key, code.strip().encode(), hashlib.sha256).hexdigest()

    # principals
    def create_principal(
        self,
        username: str,
        email: str,
        *,
        roles: Iterable[Role] = (Role.USER,),
        status: PrincipalStatus = PrincipalStatus.ACTIVE,
        account_expires_at: Optional[datetime] = None,
    ) -> Principal:
        normalized_email = email.strip().lower()
        with self._mutation():
            if self.exists_by_username(username):
                raise ConstraintViolation("username already exists", {"field": "username"})
            if self.exists_by_email(normalized_email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            principal = Principal(
                id=str(uuid.uuid4()),
                username=username,
                email=normalized_email,
                roles=frozenset(roles),
                status=status,
                account_expires_at=account_expires_at,
            )
            self.principals[principal.id] = principal
            self._persist_state()
            return replace(principal)

    def find_by_id(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            return replace(principal) if principal else None

    def find_by_username(self, username: str) -> Optional[Principal]:
        with self._data_lock:
            principal = next(
                (p for p in self.principals.values() if p.username == username), None
            )
            return replace(principal) if principal else None

    def find_by_email(self, email: str) -> Optional[Principal]:
        normalized = email.strip().lower()
        with self._data_lock:
            principal = next(
                (p for p in self.principals.values() if p.email == normalized), None
            )
            return replace(principal) if principal else None

    def exists_by_username(self, username: str) -> bool:
        with self._data_lock:
            return any(p.username == username for p in self.principals.values())

    def exists_by_email(self, email: str) -> bool:
        normalized = email.strip().lower()
        with self._data_lock:
            return any(p.email == normalized for p in self.principals.values())

    def list_principals(self, limit: int = 100) -> List[Principal]:
        with self._data_lock:
            ordered = sorted(self.principals.values(), key=lambda p: p.created_at)
            return [replace(p) for p in ordered[:limit]]

    def save(self, principal_id: str, **changes: Any) -> Optional[Principal]:
        """Apply a partial update to a principal and return the new snapshot."""
        unknown = set(changes) - _MUTABLE_PRINCIPAL_FIELDS
        if unknown:
            raise ValueError(f"unknown principal fields: {sorted(unknown)}")
        with self._mutation():
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            if "roles" in changes:
                changes["roles"] = frozenset(changes["roles"])
            updated = replace(principal, **changes)
            self.principals[principal_id] = updated
            self._persist_state()
            return replace(updated)

    # passwords
    def save_password(self, principal_id: str, password_hash: str, password_algo: str) -> None:
        with self._mutation():
            if principal_id not in self.principals:
                raise ConstraintViolation(
                    "principal not found for credentials", {"principal_id": principal_id}
                )
            self.credentials[principal_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, principal_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(principal_id)

    # mfa
    def set_mfa_secret(
        self,
        principal_id: str,
        secret: str,
        *,
        enabled: bool = False,
        recovery_codes: Optional[Iterable[str]] = None,
    ) -> MFAConfig:
        """Store an MFA secret; ``recovery_codes`` replaces the whole code set."""
        with self._mutation():
            principal = self.principals.get(principal_id)
            if not principal:
                raise ConstraintViolation("principal not found for mfa", {"principal_id": principal_id})
            existing = self.mfa_configs.get(principal_id)
            digests = (
                frozenset(self.recovery_code_digest(code) for code in recovery_codes)
                if recovery_codes is not None
                else (existing.recovery_codes if existing else frozenset())
            )
            record = MFAConfig(
                principal_id=principal_id,
                secret=self._encrypt_mfa_secret(secret),
                enabled=enabled,
                recovery_codes=digests,
            )
            self.mfa_configs[principal_id] = record
            self.principals[principal_id] = replace(principal, mfa_enabled=enabled)
            self._persist_state()
            return replace(record, secret=secret)

    def get_mfa_secret(self, principal_id: str) -> Optional[MFAConfig]:
        with self._data_lock:
            cfg = self.mfa_configs.get(principal_id)
            if not cfg:
                return None
            return replace(cfg, secret=self._decrypt_mfa_secret(cfg.secret))

    def consume_recovery_code(self, principal_id: str, code: str) -> bool:
        """Remove ``code`` from the principal's set; True only for the remover."""
        digest = self.recovery_code_digest(code)
        with self._mutation():
            cfg = self.mfa_configs.get(principal_id)
            if not cfg or digest not in cfg.recovery_codes:
                return False
            self.mfa_configs[principal_id] = replace(
                cfg, recovery_codes=cfg.recovery_codes - {digest}
            )
            self._persist_state()
            return True

    def replace_recovery_codes(self, principal_id: str, codes: Iterable[str]) -> None:
        with self._mutation():
            cfg = self.mfa_configs.get(principal_id)
            if not cfg:
                raise ConstraintViolation("mfa not configured", {"principal_id": principal_id})
            self.mfa_configs[principal_id] = replace(
                cfg, recovery_codes=frozenset(self.recovery_code_digest(c) for c in codes)
            )
            self._persist_state()

    def recovery_code_count(self, principal_id: str) -> int:
        with self._data_lock:
            cfg = self.mfa_configs.get(principal_id)
            return len(cfg.recovery_codes) if cfg else 0

    def clear_mfa(self, principal_id: str) -> None:
        with self._mutation():
            self.mfa_configs.pop(principal_id, None)
            principal = self.principals.get(principal_id)
            if principal:
                self.principals[principal_id] = replace(principal, mfa_enabled=False)
            self._persist_state()

    # sessions
    def insert_session(self, record: SessionRecord) -> None:
        with self._mutation():
            if record.principal_id in self.sessions:
                raise ConstraintViolation(
                    "principal already has a live session",
                    {"principal_id": record.principal_id},
                )
            self.sessions[record.principal_id] = record
            self._session_tokens[record.token] = record.principal_id
            self._persist_state()

    def delete_session(
        self, principal_id: str, *, token: Optional[str] = None
    ) -> Optional[SessionRecord]:
        """Delete the principal's session row, only if it carries ``token`` when given."""
        with self._mutation():
            record = self.sessions.get(principal_id)
            if not record or (token is not None and record.token != token):
                return None
            self.sessions.pop(principal_id, None)
            self._session_tokens.pop(record.token, None)
            self._persist_state()
            return record

    def get_session_by_token(self, token: str) -> Optional[SessionRecord]:
        with self._data_lock:
            principal_id = self._session_tokens.get(token)
            return self.sessions.get(principal_id) if principal_id else None

    def get_session_for_principal(self, principal_id: str) -> Optional[SessionRecord]:
        with self._data_lock:
            return self.sessions.get(principal_id)

    def list_expired_sessions(self, now: datetime) -> List[SessionRecord]:
        with self._data_lock:
            return [s for s in self.sessions.values() if s.expires_at < now]

    # revocations
    def add_revocation(self, token: str, expires_at: datetime) -> bool:
        with self._mutation():
            if token in self.revocations:
                return False
            self.revocations[token] = RevocationEntry(token=token, expires_at=expires_at)
            self._persist_state()
            return True

    def is_revoked(self, token: str) -> bool:
        with self._data_lock:
            return token in self.revocations

    def purge_revocations(self, now: datetime) -> int:
        with self._mutation():
            expired = [t for t, entry in self.revocations.items() if entry.expires_at < now]
            for token in expired:
                self.revocations.pop(token, None)
            if expired:
                self._persist_state()
            return len(expired)

    # persistence
    _TABLES = (
        "principals",
        "credentials",
        "mfa_configs",
        "sessions",
        "_session_tokens",
        "revocations",
    )

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        """Run one mutator under the lock, restoring every table if the write fails."""
        with self._data_lock:
            if not self.persist:
                yield
                return
            snapshot = {name: dict(getattr(self, name)) for name in self._TABLES}
            try:
                yield
            except StoreUnavailable:
                for name, table in snapshot.items():
                    setattr(self, name, table)
                raise

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        return self.fs_root / "state" / "trustgate_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_principal(self, principal: Principal) -> dict:
        return {
            "id": principal.id,
            "username": principal.username,
            "email": principal.email,
            "roles": sorted(role.value for role in principal.roles),
            "status": principal.status.value,
            "status_reason": principal.status_reason,
            "failed_attempts": principal.failed_attempts,
            "last_failed_at": self._serialize_datetime(principal.last_failed_at),
            "account_expires_at": self._serialize_datetime(principal.account_expires_at),
            "mfa_enabled": principal.mfa_enabled,
            "created_at": self._serialize_datetime(principal.created_at),
        }

    def _deserialize_principal(self, data: dict) -> Principal:
        return Principal(
            id=data["id"],
            username=data["username"],
            email=data["email"],
            roles=frozenset(Role(value) for value in data.get("roles", [])),
            status=PrincipalStatus(data.get("status", PrincipalStatus.ACTIVE.value)),
            status_reason=data.get("status_reason"),
            failed_attempts=int(data.get("failed_attempts", 0)),
            last_failed_at=self._deserialize_datetime(data.get("last_failed_at")),
            account_expires_at=self._deserialize_datetime(data.get("account_expires_at")),
            mfa_enabled=bool(data.get("mfa_enabled", False)),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "principals": [self._serialize_principal(p) for p in self.principals.values()],
            "credentials": [
                {"principal_id": pid, "password_hash": creds[0], "password_algo": creds[1]}
                for pid, creds in self.credentials.items()
            ],
            "mfa": [
                {
                    "principal_id": cfg.principal_id,
                    "secret": cfg.secret,
                    "enabled": cfg.enabled,
                    "recovery_codes": sorted(cfg.recovery_codes),
                    "created_at": self._serialize_datetime(cfg.created_at),
                }
                for cfg in self.mfa_configs.values()
            ],
            "sessions": [
                {
                    "principal_id": s.principal_id,
                    "token": s.token,
                    "issued_at": self._serialize_datetime(s.issued_at),
                    "expires_at": self._serialize_datetime(s.expires_at),
                }
                for s in self.sessions.values()
            ],
            "revocations": [
                {"token": r.token, "expires_at": self._serialize_datetime(r.expires_at)}
                for r in self.revocations.values()
            ],
        }
        path = self._state_path()
        tmp_path = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".store_", suffix=".tmp")
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle)
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            self.logger.error("store_persist_failed", path=str(path), error=str(exc))
            raise StoreUnavailable(f"credential store write failed: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StoreUnavailable(f"credential store read failed: {exc}") from exc
        self.principals = {
            p["id"]: self._deserialize_principal(p) for p in data.get("principals", [])
        }
        self.credentials = {
            entry["principal_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.mfa_configs = {
            entry["principal_id"]: MFAConfig(
                principal_id=entry["principal_id"],
                secret=entry["secret"],
                enabled=bool(entry.get("enabled", False)),
                recovery_codes=frozenset(entry.get("recovery_codes", [])),
                created_at=self._deserialize_datetime(entry.get("created_at")) or utcnow(),
            )
            for entry in data.get("mfa", [])
        }
        self.sessions = {}
        self._session_tokens = {}
        for entry in data.get("sessions", []):
            record = SessionRecord(
                principal_id=entry["principal_id"],
                token=entry["token"],
                issued_at=self._deserialize_datetime(entry["issued_at"]),
                expires_at=self._deserialize_datetime(entry["expires_at"]),
            )
            self.sessions[record.principal_id] = record
            self._session_tokens[record.token] = record.principal_id
        self.revocations = {
            entry["token"]: RevocationEntry(
                token=entry["token"],
                expires_at=self._deserialize_datetime(entry["expires_at"]),
            )
            for entry in data.get("revocations", [])
        }
        self.logger.info(
            "memory_store_loaded",
            principals=len(self.principals),
            sessions=len(self.sessions),
            revocations=len(self.revocations),
        )
        return True
