import base64
import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from .errors import UnauthorizedError
from .identity import CREDENTIALS, canonical_handle
from .models import Officer, OfficerSession
from .settings import Settings
from .store import SERVER_TIMESTAMP, AccountStore

log = logging.getLogger("escobar.gate")

OFFICERS = "officers"

NOT_AUTHORIZED = "Not authorized."


def officer_enabled(record: Optional[dict]) -> bool:
    return record is not None and record.get("enabled", True) is not False


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


class ModerationGate:
    """Officer authorization: portal code + roster check, then a signed,
    expiring capability token that is re-validated against the roster on
    every use."""

    def __init__(self, store: AccountStore, settings: Optional[Settings] = None,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.settings = settings or Settings()
        self._clock = clock

    def enroll_officer(self, member_id: str, enabled: bool = True) -> Officer:
        fields = {"enabled": enabled}
        if self.store.get(OFFICERS, member_id) is None:
            fields["created_at"] = SERVER_TIMESTAMP
        self.store.set(OFFICERS, member_id, fields, merge=True)
        log.info("officer %s %s", member_id, "enabled" if enabled else "disabled")
        return Officer(id=member_id, **self.store.get(OFFICERS, member_id))

    def is_officer(self, member_id: str) -> bool:
        return officer_enabled(self.store.get(OFFICERS, member_id))

    def bootstrap_roster(self) -> list[str]:
        """Enroll the configured officer handles that already belong to an
        account. Runs once at startup; a handle registered afterwards is
        never enrolled, and an existing officer record (enabled or not) is
        left as it is."""
        enrolled = []
        for handle in self.settings.officer_handles:
            credential = self.store.get(CREDENTIALS, canonical_handle(handle))
            if credential is None:
                log.warning("officer handle %s has no account; not enrolled", handle)
                continue
            member_id = credential["member_id"]
            if self.store.get(OFFICERS, member_id) is not None:
                continue
            self.enroll_officer(member_id)
            enrolled.append(member_id)
        return enrolled

    def authorize_officer(self, member_id: str, portal_code: str) -> OfficerSession:
        expected = self.settings.officer_portal_code
        code_ok = bool(expected) and hmac.compare_digest(
            (portal_code or "").encode("utf-8"), expected.encode("utf-8")
        )
        if not code_ok or not self.is_officer(member_id):
            log.warning("officer authorization refused for %s", member_id)
            raise UnauthorizedError(NOT_AUTHORIZED)

        expires = int(self._clock()) + self.settings.officer_token_ttl_seconds
        token = self._sign({"sub": member_id, "exp": expires})
        log.info("officer session issued for %s", member_id)
        return OfficerSession(
            token=token,
            officer_id=member_id,
            expires_at=datetime.fromtimestamp(expires, tz=timezone.utc),
        )

    def verify(self, token: Optional[str], member_id: Optional[str] = None) -> str:
        payload = self._unsign(token or "")
        if payload is None:
            raise UnauthorizedError(NOT_AUTHORIZED)

        officer_id = payload.get("sub")
        expires = payload.get("exp")
        if not isinstance(officer_id, str) or not isinstance(expires, int) or expires <= self._clock():
            raise UnauthorizedError(NOT_AUTHORIZED)
        if member_id is not None and officer_id != member_id:
            raise UnauthorizedError(NOT_AUTHORIZED)
        if not self.is_officer(officer_id):
            raise UnauthorizedError(NOT_AUTHORIZED)
        return officer_id

    def _signature(self, body: str) -> str:
        digest = hmac.new(self.settings.token_secret.encode("utf-8"), body.encode("ascii"), hashlib.sha256).digest()
        return _b64encode(digest)

    def _sign(self, payload: dict) -> str:
        body = _b64encode(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8"))
        return f"{body}.{self._signature(body)}"

    def _unsign(self, token: str) -> Optional[dict]:
        body, sep, signature = token.partition(".")
        if not sep or not body:
            return None
        try:
            if not hmac.compare_digest(self._signature(body).encode("ascii"), signature.encode("utf-8")):
                return None
            payload = json.loads(_b64decode(body))
        except (ValueError, UnicodeError):
            return None
        return payload if isinstance(payload, dict) else None
