import logging
from typing import Any, Optional

from .errors import (
    LedgerServiceError,
    InvalidInputError,
    NotFoundError,
    MemberNotFoundError,
    SpendRequestNotFoundError,
    InvalidStateError,
    AccountDisabledError,
    AlreadyHandledError,
    InsufficientFundsError,
    WouldGoNegativeError,
    InsufficientBalanceError,
    UnauthorizedError,
    TransientStoreError,
)
from .gate import NOT_AUTHORIZED, OFFICERS, officer_enabled
from .identity import MEMBERS, logs_collection
from .models import (
    Announcement,
    Decision,
    LogEntry,
    LogHistoryResponse,
    LogKind,
    Member,
    MemberBalance,
    RequestStatus,
    SpendRequest,
)
from .settings import Settings
from .store import SERVER_TIMESTAMP, AccountStore, Query, Subscription, Transaction

log = logging.getLogger("escobar.ledger")

SPEND_REQUESTS = "spendRequests"
ANNOUNCEMENTS = "announcements"

MEMBER_LIST_LIMIT = 500
LOG_FEED_LIMIT = 30
ANNOUNCEMENT_FEED_LIMIT = 20
MEMBER_REQUEST_FEED_LIMIT = 20
PENDING_FEED_LIMIT = 50

__all__ = [
    "LedgerService",
    "LedgerServiceError",
    "InvalidInputError",
    "NotFoundError",
    "MemberNotFoundError",
    "SpendRequestNotFoundError",
    "InvalidStateError",
    "AccountDisabledError",
    "AlreadyHandledError",
    "InsufficientFundsError",
    "WouldGoNegativeError",
    "InsufficientBalanceError",
    "UnauthorizedError",
    "TransientStoreError",
]


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _required_text(value: Optional[str], message: str) -> str:
    text = value.strip() if isinstance(value, str) else ""
    if not text:
        raise InvalidInputError(message)
    return text


class LedgerService:
    """The balance-mutation protocol.

    Every mutation runs inside one store transaction: the officer record,
    member and request are read, the business rules are checked, and the
    balance, log entry and request status are written together or not at
    all.
    """

    def __init__(self, store: Optional[AccountStore] = None, settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        self.store = store or AccountStore(max_attempts=self.settings.transaction_max_attempts)

    # Officer operations

    def adjust_balance(self, member_id: str, delta: int, reason: str, officer_id: str) -> LogEntry:
        if not _is_int(delta) or delta == 0:
            raise InvalidInputError("Enter a valid amount.")
        reason = _required_text(reason, "Enter a reason.")

        def _adjust(tx: Transaction) -> tuple[str, int]:
            self._require_officer(tx, officer_id)
            member = self._require_member(tx, member_id)
            if member.get("disabled"):
                raise AccountDisabledError("That account is disabled.")

            balance = member.get("balance", 0)
            new_balance = balance + delta
            if new_balance < 0:
                raise WouldGoNegativeError(f"Would go negative (current {balance}).")

            tx.update(MEMBERS, member_id, {"balance": new_balance})
            entry_id = tx.create(logs_collection(member_id), {
                "kind": (LogKind.ADD if delta > 0 else LogKind.DEDUCT).value,
                "amount": abs(delta),
                "reason": reason,
                "created_at": SERVER_TIMESTAMP,
                "officer_id": officer_id,
            })
            return entry_id, new_balance

        try:
            entry_id, new_balance = self.store.run_transaction(_adjust)
        except InsufficientFundsError as e:
            log.info("adjust refused for %s (delta %d): %s", member_id, delta, e)
            raise

        log.info("officer %s adjusted %s by %+d (balance %d)", officer_id, member_id, delta, new_balance)
        return self._log_entry(member_id, entry_id)

    def resolve_spend_request(self, request_id: str, decision: Decision, officer_id: str,
                              note: Optional[str] = "") -> SpendRequest:
        try:
            decision = Decision(decision)
        except ValueError:
            raise InvalidInputError(f"Unknown decision: {decision}")
        note = (note or "").strip()

        def _resolve(tx: Transaction) -> tuple[str, int]:
            self._require_officer(tx, officer_id)
            request = tx.get(SPEND_REQUESTS, request_id)
            if request is None:
                raise SpendRequestNotFoundError("Request not found.")
            if request.get("status") != RequestStatus.PENDING.value:
                raise AlreadyHandledError("Already handled.")

            member_id = request.get("member_id")
            amount = request.get("amount")
            if not member_id or not _is_int(amount) or amount <= 0:
                raise InvalidStateError("Bad request data.")

            member = self._require_member(tx, member_id)
            resolution = {
                "handled_at": SERVER_TIMESTAMP,
                "handled_by": officer_id,
                "officer_note": note,
            }

            if decision == Decision.REJECT:
                tx.update(SPEND_REQUESTS, request_id, {"status": RequestStatus.REJECTED.value, **resolution})
                return member_id, amount

            if member.get("disabled"):
                raise AccountDisabledError("That account is disabled.")
            balance = member.get("balance", 0)
            if balance < amount:
                raise InsufficientBalanceError(f"Member has only {balance}. Cannot approve {amount}.")

            tx.update(MEMBERS, member_id, {"balance": balance - amount})
            tx.create(logs_collection(member_id), {
                "kind": LogKind.SPEND.value,
                "amount": amount,
                "reason": f"Spent: {request.get('reason') or ''}",
                "created_at": SERVER_TIMESTAMP,
                "officer_id": officer_id,
                "request_id": request_id,
            })
            tx.update(SPEND_REQUESTS, request_id, {"status": RequestStatus.APPROVED.value, **resolution})
            return member_id, amount

        member_id, amount = self.store.run_transaction(_resolve)
        log.info("officer %s %s spend request %s (%s, %d)",
                 officer_id, "approved" if decision == Decision.APPROVE else "rejected",
                 request_id, member_id, amount)
        return self.get_spend_request(request_id)

    def toggle_disabled(self, member_id: str, officer_id: str) -> bool:
        def _toggle(tx: Transaction) -> bool:
            self._require_officer(tx, officer_id)
            member = self._require_member(tx, member_id)
            disabled = not member.get("disabled", False)
            tx.update(MEMBERS, member_id, {"disabled": disabled})
            return disabled

        disabled = self.store.run_transaction(_toggle)
        log.info("officer %s %s member %s", officer_id, "disabled" if disabled else "enabled", member_id)
        return disabled

    def create_announcement(self, title: str, body: str, officer_id: str) -> Announcement:
        title = _required_text(title, "Title and message required.")
        body = _required_text(body, "Title and message required.")

        def _announce(tx: Transaction) -> str:
            self._require_officer(tx, officer_id)
            return tx.create(ANNOUNCEMENTS, {
                "title": title,
                "body": body,
                "created_at": SERVER_TIMESTAMP,
                "officer_id": officer_id,
            })

        announcement_id = self.store.run_transaction(_announce)
        log.info("officer %s posted announcement %s", officer_id, announcement_id)
        return Announcement(id=announcement_id, **self.store.get(ANNOUNCEMENTS, announcement_id))

    # Member operations

    def submit_spend_request(self, member_id: str, amount: int, reason: str) -> SpendRequest:
        if not _is_int(amount) or amount <= 0:
            raise InvalidInputError("Enter a valid amount.")
        reason = _required_text(reason, "Enter a reason/item.")

        def _submit(tx: Transaction) -> str:
            member = self._require_member(tx, member_id)
            if member.get("disabled"):
                raise AccountDisabledError("Your account is disabled. Ask an officer.")
            balance = member.get("balance", 0)
            if amount > balance:
                raise InsufficientBalanceError(f"Not enough escobars. Your balance is {balance}.")

            return tx.create(SPEND_REQUESTS, {
                "member_id": member_id,
                "handle": member.get("handle", ""),
                "amount": amount,
                "reason": reason,
                "status": RequestStatus.PENDING.value,
                "created_at": SERVER_TIMESTAMP,
            })

        request_id = self.store.run_transaction(_submit)
        log.info("member %s requested to spend %d (%s)", member_id, amount, request_id)
        return self.get_spend_request(request_id)

    # Reads

    def get_member(self, member_id: str) -> Member:
        data = self.store.get(MEMBERS, member_id)
        if data is None:
            raise MemberNotFoundError(f"Member {member_id} not found")
        return Member(id=member_id, **data)

    def list_members(self, limit: int = MEMBER_LIST_LIMIT, search: Optional[str] = None) -> list[Member]:
        members = [Member(**row) for row in self.store.query(self._members_query(limit))]
        needle = (search or "").strip().lower()
        if needle:
            members = [m for m in members if needle in m.handle_key]
        return members

    def get_spend_request(self, request_id: str) -> SpendRequest:
        data = self.store.get(SPEND_REQUESTS, request_id)
        if data is None:
            raise SpendRequestNotFoundError(f"Spend request {request_id} not found")
        return SpendRequest(id=request_id, **data)

    def list_pending_requests(self, limit: int = PENDING_FEED_LIMIT) -> list[SpendRequest]:
        return [SpendRequest(**row) for row in self.store.query(self._pending_query(limit))]

    def list_member_requests(self, member_id: str, limit: int = MEMBER_REQUEST_FEED_LIMIT) -> list[SpendRequest]:
        return [SpendRequest(**row) for row in self.store.query(self._member_requests_query(member_id, limit))]

    def list_announcements(self, limit: int = ANNOUNCEMENT_FEED_LIMIT) -> list[Announcement]:
        return [Announcement(**row) for row in self.store.query(self._announcements_query(limit))]

    def get_balance(self, member_id: str) -> MemberBalance:
        member = self.get_member(member_id)
        entries = self._all_entries(member_id)
        return MemberBalance(
            member_id=member_id,
            balance=member.balance,
            ledger_total=sum(e.signed_amount for e in entries),
            total_entries=len(entries),
            last_entry_at=entries[0].created_at if entries else None,
        )

    def get_ledger_history(self, member_id: str, limit: int = LOG_FEED_LIMIT, offset: int = 0) -> LogHistoryResponse:
        member = self.get_member(member_id)
        all_entries = self._all_entries(member_id)
        return LogHistoryResponse(
            member_id=member_id,
            entries=all_entries[offset:offset + limit],
            total_count=len(all_entries),
            current_balance=member.balance,
        )

    # Live feeds

    def watch_member(self, member_id: str) -> Subscription:
        return self.store.subscribe(Query(MEMBERS, where=(("id", member_id),)), transform=lambda row: Member(**row))

    def watch_members(self, limit: int = MEMBER_LIST_LIMIT) -> Subscription:
        return self.store.subscribe(self._members_query(limit), transform=lambda row: Member(**row))

    def watch_logs(self, member_id: str, limit: int = LOG_FEED_LIMIT) -> Subscription:
        query = Query(logs_collection(member_id), order_by="created_at", descending=True, limit=limit)
        return self.store.subscribe(query, transform=lambda row: LogEntry(member_id=member_id, **row))

    def watch_announcements(self, limit: int = ANNOUNCEMENT_FEED_LIMIT) -> Subscription:
        return self.store.subscribe(self._announcements_query(limit), transform=lambda row: Announcement(**row))

    def watch_member_requests(self, member_id: str, limit: int = MEMBER_REQUEST_FEED_LIMIT) -> Subscription:
        return self.store.subscribe(self._member_requests_query(member_id, limit),
                                    transform=lambda row: SpendRequest(**row))

    def watch_pending_requests(self, limit: int = PENDING_FEED_LIMIT) -> Subscription:
        return self.store.subscribe(self._pending_query(limit), transform=lambda row: SpendRequest(**row))

    # Helpers

    def _require_officer(self, tx: Transaction, officer_id: str) -> None:
        if not officer_id or not officer_enabled(tx.get(OFFICERS, officer_id)):
            log.warning("privileged operation refused for %s", officer_id)
            raise UnauthorizedError(NOT_AUTHORIZED)

    def _require_member(self, tx: Transaction, member_id: str) -> dict:
        member = tx.get(MEMBERS, member_id) if member_id else None
        if member is None:
            raise MemberNotFoundError("User not found.")
        return member

    def _log_entry(self, member_id: str, entry_id: str) -> LogEntry:
        return LogEntry(id=entry_id, member_id=member_id, **self.store.get(logs_collection(member_id), entry_id))

    def _all_entries(self, member_id: str) -> list[LogEntry]:
        query = Query(logs_collection(member_id), order_by="created_at", descending=True)
        return [LogEntry(member_id=member_id, **row) for row in self.store.query(query)]

    def _members_query(self, limit: int) -> Query:
        return Query(MEMBERS, order_by="handle_key", limit=limit)

    def _pending_query(self, limit: int) -> Query:
        return Query(SPEND_REQUESTS, where=(("status", RequestStatus.PENDING.value),),
                     order_by="created_at", descending=True, limit=limit)

    def _member_requests_query(self, member_id: str, limit: int) -> Query:
        return Query(SPEND_REQUESTS, where=(("member_id", member_id),),
                     order_by="created_at", descending=True, limit=limit)

    def _announcements_query(self, limit: int) -> Query:
        return Query(ANNOUNCEMENTS, order_by="created_at", descending=True, limit=limit)
