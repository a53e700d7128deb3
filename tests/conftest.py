import os
import tempfile
from decimal import Decimal
from types import SimpleNamespace

import pytest

# keep the module-level app in main.py away from ./expenses.db
os.environ.setdefault("DATABASE_URL", f"sqlite:///{tempfile.gettempdir()}/expense-approvals-import.db")

from approvals import ApprovalService  # noqa: E402
from audit import AuditSink  # noqa: E402
from db import init_db, make_engine, unit_of_work  # noqa: E402
from errors import RateUnavailable  # noqa: E402
from expenses import ExpenseService  # noqa: E402
from models import ApprovalRule, Company, Role, User  # noqa: E402


class FakeRateSource:
    def __init__(self, rates=None):
        self.rates = {k: Decimal(str(v)) for k, v in (rates or {}).items()}
        self.calls = []
        self.fail = False

    def spot_rate(self, base, target):
        self.calls.append((base, target))
        if self.fail or (base, target) not in self.rates:
            raise RateUnavailable(f"no rate for {base}->{target}")
        return self.rates[(base, target)]


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, event, recipient_id, expense_id, **details):
        self.sent.append((event, recipient_id, expense_id))


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def rates():
    return FakeRateSource({("EUR", "USD"): "1.10", ("INR", "USD"): "0.012"})


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def audit(engine):
    return AuditSink(engine)


@pytest.fixture
def expenses(engine, rates, audit, notifier):
    return ExpenseService(engine, rates, audit, notifier)


@pytest.fixture
def approvals(engine, audit, notifier):
    return ApprovalService(engine, audit, notifier)


@pytest.fixture
def org(engine):
    """A USD company: ceo <- director <- manager <- employee, plus two peers and one inactive manager."""
    with unit_of_work(engine) as s:
        company = Company(name="Acme", country="United States", currency="USD")
        other = Company(name="Globex", country="Germany", currency="EUR")
        s.add_all([company, other])
        s.flush()

        def add(name, role, manager=None, active=True, company_id=company.id):
            user = User(name=name, email=f"{name}@example.com", role=role, company_id=company_id,
                        manager_id=manager.id if manager else None, is_active=active)
            s.add(user)
            s.flush()
            return user

        admin = add("admin", Role.ADMIN)
        ceo = add("ceo", Role.MANAGER)
        director = add("director", Role.MANAGER, ceo)
        manager = add("manager", Role.MANAGER, director)
        employee = add("employee", Role.EMPLOYEE, manager)
        peer = add("peer", Role.MANAGER)
        retired = add("retired", Role.MANAGER, active=False)
        outsider = add("outsider", Role.MANAGER, company_id=other.id)
        ids = SimpleNamespace(company=company.id, other_company=other.id, admin=admin.id, ceo=ceo.id,
                              director=director.id, manager=manager.id, employee=employee.id, peer=peer.id,
                              retired=retired.id, outsider=outsider.id)
    return ids


@pytest.fixture
def make_rule(engine, org):
    def _make(type, **kw):
        kw.setdefault("name", f"{type.value.lower()} rule")
        kw.setdefault("company_id", org.company)
        with unit_of_work(engine) as s:
            rule = ApprovalRule(type=type, **kw)
            s.add(rule)
            s.flush()
            return rule.id
    return _make


@pytest.fixture
def submitted(expenses, org):
    """Draft and submit an expense for ``employee`` (or another submitter)."""
    def _submit(amount=100, currency="USD", category="travel", submitter=None):
        submitter = submitter or org.employee
        draft = expenses.create_draft(submitter, amount, currency, category)
        return expenses.submit(draft["id"], submitter)
    return _submit
