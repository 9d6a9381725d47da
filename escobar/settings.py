import logging
import os
import secrets
from dataclasses import dataclass, field

log = logging.getLogger("escobar.settings")


def _csv(name: str, default: str = "") -> tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


@dataclass(frozen=True)
class Settings:
    officer_portal_code: str = ""
    token_secret: str = field(default_factory=lambda: secrets.token_hex(32))
    officer_token_ttl_seconds: int = 3600
    session_ttl_seconds: int = 86400
    password_iterations: int = 200_000
    transaction_max_attempts: int = 5
    officer_handles: tuple[str, ...] = ()
    cors_allow_origins: tuple[str, ...] = ("*",)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        token_secret = os.getenv("ESCOBAR_TOKEN_SECRET")
        if not token_secret:
            log.warning("ESCOBAR_TOKEN_SECRET not set; officer tokens will not survive a restart")
            token_secret = secrets.token_hex(32)

        return cls(
            officer_portal_code=os.getenv("ESCOBAR_OFFICER_PORTAL_CODE", ""),
            token_secret=token_secret,
            officer_token_ttl_seconds=_int("ESCOBAR_OFFICER_TOKEN_TTL", 3600),
            session_ttl_seconds=_int("ESCOBAR_SESSION_TTL", 86400),
            password_iterations=_int("ESCOBAR_PASSWORD_ITERATIONS", 200_000),
            transaction_max_attempts=_int("ESCOBAR_TX_MAX_ATTEMPTS", 5),
            officer_handles=tuple(h.lower() for h in _csv("ESCOBAR_OFFICER_HANDLES")),
            cors_allow_origins=_csv("ESCOBAR_CORS_ORIGINS", "*"),
            log_level=os.getenv("ESCOBAR_LOG_LEVEL", "INFO").upper(),
        )
