import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .errors import (
    LedgerServiceError, InvalidInputError, NotFoundError, InvalidStateError,
    InsufficientFundsError, InvalidCredentialsError, UnauthorizedError, TransientStoreError,
)
from .gate import ModerationGate
from .identity import IdentityAdapter
from .models import (
    AdjustBalanceRequest, Announcement, CreateAnnouncementRequest, CredentialsRequest,
    LogEntry, LogHistoryResponse, Member, MemberBalance, OfficerLoginRequest, OfficerSession,
    ResolveSpendRequest, SessionResponse, SpendRequest, SubmitSpendRequest, ToggleDisabledResponse,
)
from .service import LedgerService
from .settings import Settings
from .store import AccountStore

log = logging.getLogger("escobar.api")

ERROR_STATUS = (
    (InvalidInputError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidStateError, status.HTTP_409_CONFLICT),
    (InsufficientFundsError, status.HTTP_400_BAD_REQUEST),
    (InvalidCredentialsError, status.HTTP_401_UNAUTHORIZED),
    (UnauthorizedError, status.HTTP_403_FORBIDDEN),
    (TransientStoreError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_for(error: LedgerServiceError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(error, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


def create_app(settings: Optional[Settings] = None, store: Optional[AccountStore] = None,
               root_path: str = "") -> FastAPI:
    settings = settings or Settings.from_env()
    store = store or AccountStore(max_attempts=settings.transaction_max_attempts)
    identity = IdentityAdapter(store, settings)
    gate = ModerationGate(store, settings)
    ledger_service = LedgerService(store, settings)
    gate.bootstrap_roster()

    app = FastAPI(
        title="Escobar Ledger API",
        description="Community points ledger: balances, spend requests and officer moderation",
        version="1.0.0",
        root_path=root_path,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_allow_origins),
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.store = store
    app.state.identity = identity
    app.state.gate = gate
    app.state.ledger = ledger_service

    @app.exception_handler(LedgerServiceError)
    async def ledger_error_handler(request: Request, exc: LedgerServiceError) -> JSONResponse:
        code = status_for(exc)
        if code >= 500:
            log.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=code, content={"detail": str(exc)})

    def session_token(authorization: Optional[str] = Header(None)) -> Optional[str]:
        if not authorization:
            return None
        scheme, _, token = authorization.partition(" ")
        return token.strip() if scheme.lower() == "bearer" else None

    def current_member_id(token: Optional[str] = Depends(session_token)) -> str:
        member_id = identity.current_session(token)
        if member_id is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Not signed in.",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return member_id

    def active_member(member_id: str = Depends(current_member_id)) -> Member:
        member = ledger_service.get_member(member_id)
        if member.disabled:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Your account is disabled. Ask an officer.")
        return member

    def current_officer(member_id: str = Depends(current_member_id),
                        x_officer_token: Optional[str] = Header(None)) -> str:
        return gate.verify(x_officer_token, member_id)

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "escobar-ledger"}

    # Auth

    @app.post("/auth/register", response_model=SessionResponse, status_code=status.HTTP_201_CREATED, tags=["Auth"])
    def register(request: CredentialsRequest) -> SessionResponse:
        member_id = identity.register(request.handle, request.secret)
        session = identity.open_session(member_id)
        return SessionResponse(session=session, member=ledger_service.get_member(member_id))

    @app.post("/auth/login", response_model=SessionResponse, tags=["Auth"])
    def login(request: CredentialsRequest) -> SessionResponse:
        session = identity.create_session(request.handle, request.secret)
        return SessionResponse(session=session, member=ledger_service.get_member(session.member_id))

    @app.post("/auth/logout", tags=["Auth"])
    def logout(token: Optional[str] = Depends(session_token)):
        if token:
            identity.destroy_session(token)
        return {"status": "signed out"}

    # Member portal

    @app.get("/me", response_model=Member, tags=["Members"])
    def get_me(member: Member = Depends(active_member)) -> Member:
        return member

    @app.get("/me/balance", response_model=MemberBalance, tags=["Members"])
    def get_my_balance(member: Member = Depends(active_member)) -> MemberBalance:
        return ledger_service.get_balance(member.id)

    @app.get("/me/logs", response_model=LogHistoryResponse, tags=["Members"])
    def get_my_logs(limit: int = 30, offset: int = 0, member: Member = Depends(active_member)) -> LogHistoryResponse:
        return ledger_service.get_ledger_history(member.id, limit, offset)

    @app.get("/me/spend-requests", response_model=list[SpendRequest], tags=["Spend Requests"])
    def get_my_requests(member: Member = Depends(active_member)) -> list[SpendRequest]:
        return ledger_service.list_member_requests(member.id)

    @app.post("/me/spend-requests", response_model=SpendRequest, status_code=status.HTTP_201_CREATED,
              tags=["Spend Requests"])
    def submit_spend_request(request: SubmitSpendRequest, member: Member = Depends(active_member)) -> SpendRequest:
        return ledger_service.submit_spend_request(member.id, request.amount, request.reason)

    @app.get("/announcements", response_model=list[Announcement], tags=["Announcements"])
    def get_announcements(member_id: str = Depends(current_member_id)) -> list[Announcement]:
        return ledger_service.list_announcements()

    # Officer portal

    @app.post("/officer/login", response_model=OfficerSession, tags=["Officers"])
    def officer_login(request: OfficerLoginRequest, member_id: str = Depends(current_member_id)) -> OfficerSession:
        return gate.authorize_officer(member_id, request.portal_code)

    @app.get("/officer/members", response_model=list[Member], tags=["Officers"])
    def list_members(search: Optional[str] = None, officer_id: str = Depends(current_officer)) -> list[Member]:
        return ledger_service.list_members(search=search)

    @app.get("/officer/members/{member_id}/balance", response_model=MemberBalance, tags=["Officers"])
    def audit_member(member_id: str, officer_id: str = Depends(current_officer)) -> MemberBalance:
        return ledger_service.get_balance(member_id)

    @app.post("/officer/members/{member_id}/adjust", response_model=LogEntry, tags=["Officers"])
    def adjust_balance(member_id: str, request: AdjustBalanceRequest,
                       officer_id: str = Depends(current_officer)) -> LogEntry:
        if request.amount <= 0:
            raise InvalidInputError("Enter a valid amount.")
        return ledger_service.adjust_balance(member_id, request.delta, request.reason, officer_id)

    @app.post("/officer/members/{member_id}/toggle-disabled", response_model=ToggleDisabledResponse,
              tags=["Officers"])
    def toggle_disabled(member_id: str, officer_id: str = Depends(current_officer)) -> ToggleDisabledResponse:
        disabled = ledger_service.toggle_disabled(member_id, officer_id)
        return ToggleDisabledResponse(member_id=member_id, disabled=disabled)

    @app.get("/officer/spend-requests", response_model=list[SpendRequest], tags=["Officers"])
    def list_pending_requests(officer_id: str = Depends(current_officer)) -> list[SpendRequest]:
        return ledger_service.list_pending_requests()

    @app.post("/officer/spend-requests/{request_id}/resolve", response_model=SpendRequest, tags=["Officers"])
    def resolve_spend_request(request_id: str, request: ResolveSpendRequest,
                              officer_id: str = Depends(current_officer)) -> SpendRequest:
        return ledger_service.resolve_spend_request(request_id, request.decision, officer_id, request.note)

    @app.post("/officer/announcements", response_model=Announcement, status_code=status.HTTP_201_CREATED,
              tags=["Officers"])
    def create_announcement(request: CreateAnnouncementRequest,
                            officer_id: str = Depends(current_officer)) -> Announcement:
        return ledger_service.create_announcement(request.title, request.body, officer_id)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
