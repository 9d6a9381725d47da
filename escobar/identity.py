import hashlib
import hmac
import logging
import os
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from .errors import HandleTakenError, InvalidCredentialsError, InvalidHandleError, InvalidInputError
from .models import LogKind, Session
from .settings import Settings
from .store import SERVER_TIMESTAMP, AccountStore, Query, Transaction

log = logging.getLogger("escobar.identity")

HANDLE_PATTERN = re.compile(r"^[A-Za-z0-9._-]{3,20}$")
MIN_SECRET_LENGTH = 6

MEMBERS = "members"
CREDENTIALS = "credentials"
SESSIONS = "sessions"


def logs_collection(member_id: str) -> str:
    return f"{MEMBERS}/{member_id}/logs"


def valid_handle(handle: Optional[str]) -> bool:
    return bool(HANDLE_PATTERN.match((handle or "").strip()))


def canonical_handle(handle: str) -> str:
    return handle.strip().lower()


def _hash_secret(secret: str, salt: bytes, iterations: int) -> str:
    return hashlib.pbkdf2_hmac("sha256", secret.encode("utf-8"), salt, iterations, dklen=32).hex()


def new_member_fields(handle: str) -> dict:
    return {
        "handle": handle.strip(),
        "handle_key": canonical_handle(handle),
        "balance": 0,
        "disabled": False,
        "created_at": SERVER_TIMESTAMP,
    }


class IdentityAdapter:
    """Maps handles to credentials and sessions to member identifiers."""

    def __init__(self, store: AccountStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or Settings()

    def register(self, handle: str, secret: str) -> str:
        if not valid_handle(handle):
            raise InvalidHandleError("Handle must be 3-20 chars and only letters/numbers/._-")
        if len(secret or "") < MIN_SECRET_LENGTH:
            raise InvalidInputError(f"Secret must be at least {MIN_SECRET_LENGTH} characters.")

        key = canonical_handle(handle)
        salt = os.urandom(16)
        iterations = self.settings.password_iterations
        password_hash = _hash_secret(secret, salt, iterations)

        def _register(tx: Transaction) -> str:
            if tx.get(CREDENTIALS, key) is not None:
                raise HandleTakenError(f"Handle {handle.strip()} is already taken.")

            member_id = tx.new_id()
            tx.create(CREDENTIALS, {
                "member_id": member_id,
                "salt": salt.hex(),
                "iterations": iterations,
                "password_hash": password_hash,
                "created_at": SERVER_TIMESTAMP,
            }, doc_id=key)
            tx.create(MEMBERS, new_member_fields(handle), doc_id=member_id)
            tx.create(logs_collection(member_id), {
                "kind": LogKind.INIT.value,
                "amount": 0,
                "reason": "Account created",
                "created_at": SERVER_TIMESTAMP,
            })
            return member_id

        member_id = self.store.run_transaction(_register)
        log.info("registered member %s (%s)", member_id, key)
        return member_id

    def authenticate(self, handle: str, secret: str) -> str:
        if not valid_handle(handle):
            raise InvalidHandleError("Invalid handle format.")

        key = canonical_handle(handle)
        credential = self.store.get(CREDENTIALS, key)
        if credential is None or not self._secret_matches(credential, secret or ""):
            log.info("failed login for %s", key)
            raise InvalidCredentialsError("Invalid handle or secret.")

        member_id = credential["member_id"]

        def _ensure_member(tx: Transaction) -> None:
            if tx.get(MEMBERS, member_id) is None:
                tx.create(MEMBERS, new_member_fields(handle), doc_id=member_id)
                log.info("created missing member record for %s", key)

        self.store.run_transaction(_ensure_member)
        return member_id

    def _secret_matches(self, credential: dict, secret: str) -> bool:
        expected = credential["password_hash"]
        actual = _hash_secret(secret, bytes.fromhex(credential["salt"]), credential["iterations"])
        return hmac.compare_digest(expected, actual)

    def create_session(self, handle: str, secret: str) -> Session:
        member_id = self.authenticate(handle, secret)
        return self.open_session(member_id)

    def open_session(self, member_id: str) -> Session:
        self.purge_expired_sessions()
        token = secrets.token_urlsafe(32)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.settings.session_ttl_seconds)
        self.store.set(SESSIONS, token, {"member_id": member_id, "expires_at": expires_at})
        return Session(token=token, member_id=member_id, expires_at=expires_at)

    def purge_expired_sessions(self) -> int:
        now = datetime.now(timezone.utc)
        expired = [row["id"] for row in self.store.query(Query(SESSIONS)) if row["expires_at"] <= now]
        for token in expired:
            self.store.delete(SESSIONS, token)
        if expired:
            log.debug("purged %d expired sessions", len(expired))
        return len(expired)

    def current_session(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        session = self.store.get(SESSIONS, token)
        if session is None:
            return None
        if session["expires_at"] <= datetime.now(timezone.utc):
            self.store.delete(SESSIONS, token)
            return None
        return session["member_id"]

    def destroy_session(self, token: str) -> None:
        self.store.delete(SESSIONS, token)
