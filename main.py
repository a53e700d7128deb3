from datetime import date
from typing import Optional

import requests
import structlog
from fastapi import APIRouter, Body, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlmodel import select

import config
import db
from approvals import ApprovalService
from audit import AuditSink
from errors import NotFound, Unauthorized, ValidationError, WorkflowError
from expenses import ExpenseService
from logging_config import configure_logging
from models import ApprovalRule, Company, Role, RuleType, User
from notifications import NotificationDispatcher
from rates import default_rate_source
from rules import RuleMatcher, validate_rule

configure_logging()
logger = structlog.get_logger(__name__)

router = APIRouter()


# Country -> currency lookup. Mocked when USE_EXTERNAL is off.
def get_currency_for_country(country_name: str) -> str:
    if not config.USE_EXTERNAL:
        if 'India' in country_name:
            return 'INR'
        if 'United' in country_name:
            return 'USD'
        return 'EUR'
    resp = requests.get('https://restcountries.com/v3.1/all?fields=name,currencies', timeout=config.RATE_SOURCE_TIMEOUT)
    resp.raise_for_status()
    for item in resp.json():
        name = item.get('name', {}).get('common')
        if name and name.lower() == country_name.lower():
            currencies = item.get('currencies', {})
            if currencies:
                return list(currencies.keys())[0]
    return 'USD'


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


def get_expenses(request: Request) -> ExpenseService:
    return request.app.state.expenses


def get_approvals(request: Request) -> ApprovalService:
    return request.app.state.approvals


def _require_admin(s, user_id: int, company_id: Optional[int] = None) -> User:
    user = s.get(User, user_id)
    if not user or not user.is_active or user.role != Role.ADMIN:
        raise Unauthorized('admin role required')
    if company_id is not None and user.company_id != company_id:
        raise Unauthorized('admin belongs to another company')
    return user


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError(f'invalid date {value!r}')


@router.get('/')
def root():
    """Health endpoint - returns a small status JSON and link to API docs."""
    return {"status": "ok", "service": "expense-approvals", "docs": "/docs"}


@router.post('/signup')
def signup(company_name: str = Body(...), country: str = Body(...), admin_name: str = Body(...),
           admin_email: str = Body(...), currency: Optional[str] = Body(None), engine: Engine = Depends(get_engine)):
    currency = (currency or get_currency_for_country(country)).upper()
    with db.unit_of_work(engine) as s:
        company = Company(name=company_name, country=country, currency=currency)
        s.add(company)
        s.flush()
        admin = User(name=admin_name, email=admin_email, role=Role.ADMIN, company_id=company.id)
        s.add(admin)
        s.flush()
        result = {"company_id": company.id, "admin_id": admin.id, "currency": currency}
    logger.info("company_created", **result)
    return result


@router.post('/users')
def create_user(actor_id: int = Body(...), name: str = Body(...), email: str = Body(...), role: Role = Body(Role.EMPLOYEE),
                manager_id: Optional[int] = Body(None), engine: Engine = Depends(get_engine)):
    with db.unit_of_work(engine) as s:
        admin = _require_admin(s, actor_id)
        if manager_id is not None:
            manager = s.get(User, manager_id)
            if not manager or manager.company_id != admin.company_id:
                raise ValidationError(f'manager {manager_id} is not in this company')
        if s.exec(select(User).where(User.email == email)).first():
            raise ValidationError(f'email {email} already registered')
        user = User(name=name, email=email, role=role, company_id=admin.company_id, manager_id=manager_id)
        s.add(user)
        s.flush()
        return user.model_dump()


@router.post('/rules')
def create_rule(actor_id: int = Body(...), name: str = Body(...), type: RuleType = Body(...),
                threshold_percent: Optional[int] = Body(None), specific_approver_id: Optional[int] = Body(None),
                applies_to_category: Optional[str] = Body(None), min_amount: Optional[float] = Body(None),
                max_amount: Optional[float] = Body(None), priority: int = Body(0), engine: Engine = Depends(get_engine)):
    with db.unit_of_work(engine) as s:
        admin = _require_admin(s, actor_id)
        rule = validate_rule(ApprovalRule(
            company_id=admin.company_id, name=name, type=type, threshold_percent=threshold_percent,
            specific_approver_id=specific_approver_id, applies_to_category=applies_to_category,
            min_amount=min_amount, max_amount=max_amount, priority=priority,
        ))
        s.add(rule)
        s.flush()
        result = rule.model_dump()
    logger.info("rule_created", rule_id=result["id"], rule_type=type.value, company_id=result["company_id"])
    return result


@router.get('/rules/company/{company_id}')
def list_rules(company_id: int, engine: Engine = Depends(get_engine)):
    with db.get_session(engine) as s:
        rules = s.exec(select(ApprovalRule).where(ApprovalRule.company_id == company_id)
                       .order_by(ApprovalRule.priority.desc(), ApprovalRule.created_at, ApprovalRule.id)).all()
        return [r.model_dump() for r in rules]


@router.get('/rules/company/{company_id}/preview')
def preview_rule(company_id: int, category: Optional[str] = None, amount: float = 0, engine: Engine = Depends(get_engine)):
    """Which rule would govern an expense with this category and company-currency amount."""
    with db.get_session(engine) as s:
        candidates = RuleMatcher(s).candidates(company_id, category, amount)
        return {
            "governing_rule_id": candidates[0].id if candidates else None,
            "candidates": [r.model_dump() for r in candidates],
        }


@router.patch('/rules/{rule_id}')
def update_rule(rule_id: int, actor_id: int = Body(...), changes: dict = Body(...), engine: Engine = Depends(get_engine)):
    allowed = {"name", "threshold_percent", "specific_approver_id", "applies_to_category",
               "min_amount", "max_amount", "priority", "is_active"}
    unknown = set(changes) - allowed
    if unknown:
        raise ValidationError(f'fields not editable: {sorted(unknown)}')
    with db.unit_of_work(engine) as s:
        rule = s.get(ApprovalRule, rule_id)
        if not rule:
            raise NotFound(f'rule {rule_id} not found')
        _require_admin(s, actor_id, rule.company_id)
        for field, value in changes.items():
            setattr(rule, field, value)
        validate_rule(rule)
        s.add(rule)
        s.flush()
        return rule.model_dump()


@router.delete('/rules/{rule_id}')
def deactivate_rule(rule_id: int, actor_id: int = Body(..., embed=True), engine: Engine = Depends(get_engine)):
    # rules are only ever deactivated; in-flight steps keep their snapshot either way
    with db.unit_of_work(engine) as s:
        rule = s.get(ApprovalRule, rule_id)
        if not rule:
            raise NotFound(f'rule {rule_id} not found')
        _require_admin(s, actor_id, rule.company_id)
        rule.is_active = False
        s.add(rule)
    return {"id": rule_id, "is_active": False}


@router.post('/expenses')
def create_expense(submitter_id: int = Body(...), amount: float = Body(...), currency: str = Body(...),
                   category: str = Body(...), description: Optional[str] = Body(None), date_: Optional[str] = Body(None),
                   expenses: ExpenseService = Depends(get_expenses)):
    return expenses.create_draft(submitter_id, amount, currency, category, description, _parse_date(date_))


@router.patch('/expenses/{expense_id}')
def update_expense(expense_id: int, actor_id: int = Body(...), changes: dict = Body(...),
                   expenses: ExpenseService = Depends(get_expenses)):
    changes = dict(changes)
    if 'date' in changes:
        changes['date'] = _parse_date(changes['date'])
    return expenses.update_draft(expense_id, actor_id, **changes)


@router.post('/expenses/{expense_id}/submit')
def submit_expense(expense_id: int, actor_id: int = Body(..., embed=True), expenses: ExpenseService = Depends(get_expenses)):
    result = expenses.submit(expense_id, actor_id)
    return {
        "expense_id": result.expense_id,
        "status": result.status.value,
        "converted_amount": result.converted_amount,
        "rate": result.rate,
        "rate_timestamp": result.rate_timestamp,
        "rule_id": result.rule_id,
        "steps_created": result.steps_created,
    }


@router.get('/expenses/{expense_id}')
def get_expense(expense_id: int, expenses: ExpenseService = Depends(get_expenses)):
    return expenses.get(expense_id)


@router.get('/expenses/user/{user_id}')
def list_user_expenses(user_id: int, expenses: ExpenseService = Depends(get_expenses)):
    return expenses.list_for_user(user_id)


@router.get('/expenses/{expense_id}/approvals')
def approval_history(expense_id: int, approvals: ApprovalService = Depends(get_approvals)):
    return approvals.history(expense_id)


@router.get('/expenses/{expense_id}/audit')
def expense_audit(expense_id: int, request: Request):
    return [
        {"entity": log.entity, "entity_id": log.entity_id, "action": log.action, "actor_id": log.actor_id,
         "snapshot": log.snapshot, "created_at": log.created_at.isoformat()}
        for log in request.app.state.audit.expense_trail(expense_id)
    ]


@router.get('/approvals/user/{user_id}/pending')
def pending_for_user(user_id: int, approvals: ApprovalService = Depends(get_approvals)):
    return approvals.pending_for(user_id)


@router.post('/approvals/steps/{step_id}/decision')
def make_decision(step_id: int, actor_id: int = Body(...), decision: str = Body(...), comments: Optional[str] = Body(None),
                  approvals: ApprovalService = Depends(get_approvals)):
    result = approvals.decide(step_id, actor_id, decision, comments)
    return {"step_id": result.step_id, "expense_id": result.expense_id,
            "step_status": result.step_status.value, "expense_status": result.expense_status.value}


def workflow_error_handler(request: Request, exc: WorkflowError):
    logger.info("request_rejected", path=request.url.path, error=type(exc).__name__, detail=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": type(exc).__name__, "detail": exc.message})


def create_app(bind: Engine = None, rate_source=None, notifier=None) -> FastAPI:
    bind = bind or db.engine
    db.init_db(bind)
    app = FastAPI(title="Expense approvals")
    audit = AuditSink(bind)
    notifier = notifier or NotificationDispatcher()
    app.state.engine = bind
    app.state.audit = audit
    app.state.expenses = ExpenseService(bind, rate_source or default_rate_source(), audit, notifier)
    app.state.approvals = ApprovalService(bind, audit, notifier)
    app.add_exception_handler(WorkflowError, workflow_error_handler)
    app.include_router(router)
    return app


app = create_app()
