"""
Escobar Ledger: community points accounting

This module provides:
- Member balances with an append-only audit log per member
- Officer credit/debit adjustments that can never drive a balance negative
- Spend request lifecycle: pending → approved / rejected (exactly once)
- Officer moderation gate with signed, expiring capability tokens
- A transactional document store with live result-set subscriptions
"""

from .errors import LedgerServiceError
from .gate import ModerationGate
from .identity import IdentityAdapter
from .models import (
    LogKind,
    RequestStatus,
    Decision,
    Member,
    LogEntry,
    SpendRequest,
    Officer,
    Announcement,
)
from .service import LedgerService
from .settings import Settings
from .store import AccountStore, Query, Subscription

__all__ = [
    "LedgerServiceError",
    "ModerationGate",
    "IdentityAdapter",
    "LogKind",
    "RequestStatus",
    "Decision",
    "Member",
    "LogEntry",
    "SpendRequest",
    "Officer",
    "Announcement",
    "LedgerService",
    "Settings",
    "AccountStore",
    "Query",
    "Subscription",
]
