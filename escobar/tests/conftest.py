import pytest

from escobar.gate import ModerationGate
from escobar.identity import IdentityAdapter
from escobar.service import LedgerService
from escobar.settings import Settings
from escobar.store import AccountStore

PORTAL_CODE = "escobar-officers"


@pytest.fixture
def settings():
    return Settings(
        officer_portal_code=PORTAL_CODE,
        token_secret="test-token-secret",
        password_iterations=1000,
        transaction_max_attempts=20,
    )


@pytest.fixture
def store(settings):
    return AccountStore(max_attempts=settings.transaction_max_attempts)


@pytest.fixture
def identity(store, settings):
    return IdentityAdapter(store, settings)


@pytest.fixture
def gate(store, settings):
    return ModerationGate(store, settings)


@pytest.fixture
def service(store, settings):
    return LedgerService(store, settings)


@pytest.fixture
def officer_id(identity, gate):
    member_id = identity.register("officer.one", "officer-secret")
    gate.enroll_officer(member_id)
    return member_id


@pytest.fixture
def member_id(identity):
    return identity.register("member.one", "member-secret")


@pytest.fixture
def fund(service, officer_id):
    def _fund(member_id, amount):
        return service.adjust_balance(member_id, amount, "Initial funding", officer_id)
    return _fund


@pytest.fixture
def assert_invariant(service):
    def _check(member_id):
        audit = service.get_balance(member_id)
        assert audit.balance == audit.ledger_total
        assert audit.balance >= 0
        assert audit.consistent
        return audit
    return _check
