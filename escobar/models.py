from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict, computed_field


class LogKind(str, Enum):
    INIT = "init"
    ADD = "add"
    DEDUCT = "deduct"
    SPEND = "spend"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class AdjustAction(str, Enum):
    ADD = "add"
    DEDUCT = "deduct"


class Member(BaseModel):
    id: str
    handle: str
    handle_key: str
    balance: int = 0
    disabled: bool = False
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class LogEntry(BaseModel):
    id: str
    member_id: str
    kind: LogKind
    amount: int = Field(..., ge=0)
    reason: str
    created_at: datetime
    officer_id: Optional[str] = None
    request_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def signed_amount(self) -> int:
        if self.kind in (LogKind.DEDUCT, LogKind.SPEND):
            return -self.amount
        return self.amount


class SpendRequest(BaseModel):
    id: str
    member_id: str
    handle: str
    amount: int
    reason: str
    status: RequestStatus
    created_at: datetime
    handled_at: Optional[datetime] = None
    handled_by: Optional[str] = None
    officer_note: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    def can_resolve(self) -> bool:
        return self.status == RequestStatus.PENDING


class Officer(BaseModel):
    id: str
    enabled: bool = True
    created_at: Optional[datetime] = None


class Announcement(BaseModel):
    id: str
    title: str
    body: str
    created_at: datetime
    officer_id: str

    model_config = ConfigDict(from_attributes=True)


class Session(BaseModel):
    token: str
    member_id: str
    expires_at: datetime


class OfficerSession(BaseModel):
    token: str
    officer_id: str
    expires_at: datetime


class MemberBalance(BaseModel):
    member_id: str
    balance: int
    ledger_total: int
    total_entries: int
    last_entry_at: Optional[datetime] = None

    @computed_field
    @property
    def consistent(self) -> bool:
        return self.balance == self.ledger_total and self.balance >= 0


class LogHistoryResponse(BaseModel):
    member_id: str
    entries: list[LogEntry]
    total_count: int
    current_balance: int


# Request bodies for the HTTP surface

class CredentialsRequest(BaseModel):
    handle: str
    secret: str

    model_config = ConfigDict(json_schema_extra={
        "example": {"handle": "valid_user-1", "secret": "hunter22"}
    })


class SessionResponse(BaseModel):
    session: Session
    member: Member


class OfficerLoginRequest(BaseModel):
    portal_code: str


class AdjustBalanceRequest(BaseModel):
    action: AdjustAction
    amount: int
    reason: str

    model_config = ConfigDict(json_schema_extra={
        "example": {"action": "add", "amount": 25, "reason": "Helped at the booth"}
    })

    @property
    def delta(self) -> int:
        return -self.amount if self.action == AdjustAction.DEDUCT else self.amount


class SubmitSpendRequest(BaseModel):
    amount: int
    reason: str


class ResolveSpendRequest(BaseModel):
    decision: Decision
    note: str = ""


class CreateAnnouncementRequest(BaseModel):
    title: str
    body: str


class ToggleDisabledResponse(BaseModel):
    member_id: str
    disabled: bool
