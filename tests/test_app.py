from fastapi.testclient import TestClient
import pytest

from main import create_app


@pytest.fixture
def client(engine, rates, notifier):
    return TestClient(create_app(bind=engine, rate_source=rates, notifier=notifier))


def setup_company(client):
    resp = client.post('/signup', json={"company_name": "Acme Ltd", "country": "United States", "admin_name": "Alice",
                                        "admin_email": "alice@acme.com"})
    assert resp.status_code == 200
    data = resp.json()
    assert data['currency'] == 'USD'
    admin_id = data['admin_id']

    def user(name, role, manager_id=None):
        resp = client.post('/users', json={"actor_id": admin_id, "name": name, "email": f"{name}@acme.com",
                                           "role": role, "manager_id": manager_id})
        assert resp.status_code == 200, resp.text
        return resp.json()['id']

    bob = user("bob", "MANAGER")
    eve = user("eve", "EMPLOYEE", bob)
    return admin_id, bob, eve


def test_health(client):
    assert client.get('/').json()['status'] == 'ok'


def test_submit_and_approve_flow(client):
    admin_id, bob, eve = setup_company(client)

    # only admins manage users and rules
    resp = client.post('/users', json={"actor_id": bob, "name": "x", "email": "x@acme.com", "role": "EMPLOYEE"})
    assert resp.status_code == 403
    resp = client.post('/rules', json={"actor_id": admin_id, "name": "chain", "type": "SEQUENTIAL", "priority": 1})
    assert resp.status_code == 200, resp.text

    resp = client.post('/expenses', json={"submitter_id": eve, "amount": 100.0, "currency": "EUR", "category": "travel",
                                          "description": "Team lunch", "date_": "2024-05-01"})
    assert resp.status_code == 200, resp.text
    eid = resp.json()['id']
    assert resp.json()['status'] == 'DRAFT'

    resp = client.post(f'/expenses/{eid}/submit', json={"actor_id": eve})
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body['status'] == 'WAITING_APPROVAL'
    assert body['steps_created'] == 1
    assert float(body['converted_amount']) == 110.0

    pending = client.get(f'/approvals/user/{bob}/pending').json()
    assert len(pending) == 1
    step_id = pending[0]['step_id']

    resp = client.post(f'/approvals/steps/{step_id}/decision', json={"actor_id": eve, "decision": "approve"})
    assert resp.status_code == 403
    assert resp.json()['error'] == 'Unauthorized'

    resp = client.post(f'/approvals/steps/{step_id}/decision', json={"actor_id": bob, "decision": "approve", "comments": "ok"})
    assert resp.status_code == 200
    assert resp.json() == {"step_id": step_id, "expense_id": eid, "step_status": "APPROVED", "expense_status": "APPROVED"}

    resp = client.post(f'/approvals/steps/{step_id}/decision', json={"actor_id": bob, "decision": "reject"})
    assert resp.status_code == 409
    assert resp.json()['error'] == 'AlreadyDecided'

    history = client.get(f'/expenses/{eid}/approvals').json()
    assert [h['status'] for h in history] == ['APPROVED']
    audit = [(a['entity'], a['action']) for a in client.get(f'/expenses/{eid}/audit').json()]
    assert audit == [('expense', 'EXPENSE_SUBMITTED'), ('approval_rule', 'RULE_APPLIED'),
                     ('approval_step', 'STEP_APPROVED'), ('expense', 'EXPENSE_APPROVED')]
    assert client.get(f'/expenses/user/{eve}').json()[0]['status'] == 'APPROVED'


def test_no_rule_auto_approves_over_http(client):
    _, _, eve = setup_company(client)
    eid = client.post('/expenses', json={"submitter_id": eve, "amount": 12, "currency": "USD", "category": "meals"}).json()['id']
    resp = client.post(f'/expenses/{eid}/submit', json={"actor_id": eve})
    assert resp.json()['status'] == 'APPROVED'
    assert resp.json()['steps_created'] == 0


def test_rate_outage_returns_503_and_keeps_draft(client, rates):
    _, _, eve = setup_company(client)
    rates.fail = True
    eid = client.post('/expenses', json={"submitter_id": eve, "amount": 12, "currency": "EUR", "category": "meals"}).json()['id']
    resp = client.post(f'/expenses/{eid}/submit', json={"actor_id": eve})
    assert resp.status_code == 503
    assert client.get(f'/expenses/{eid}').json()['status'] == 'DRAFT'


def test_rule_admin(client):
    admin_id, bob, _ = setup_company(client)
    resp = client.post('/rules', json={"actor_id": admin_id, "name": "cfo", "type": "SPECIFIC"})
    assert resp.status_code == 422

    rule = client.post('/rules', json={"actor_id": admin_id, "name": "cfo", "type": "SPECIFIC", "specific_approver_id": bob,
                                       "applies_to_category": "software", "priority": 5}).json()
    preview = client.get('/rules/company/{}/preview'.format(rule['company_id']), params={"category": "software", "amount": 10}).json()
    assert preview['governing_rule_id'] == rule['id']

    resp = client.patch(f"/rules/{rule['id']}", json={"actor_id": admin_id, "changes": {"priority": 9}})
    assert resp.status_code == 200 and resp.json()['priority'] == 9
    resp = client.patch(f"/rules/{rule['id']}", json={"actor_id": admin_id, "changes": {"type": "PARALLEL"}})
    assert resp.status_code == 422

    resp = client.request('DELETE', f"/rules/{rule['id']}", json={"actor_id": bob})
    assert resp.status_code == 403
    resp = client.request('DELETE', f"/rules/{rule['id']}", json={"actor_id": admin_id})
    assert resp.status_code == 200
    rules = client.get('/rules/company/{}'.format(rule['company_id'])).json()
    assert [r['is_active'] for r in rules] == [False]


def test_draft_update_over_http(client):
    _, bob, eve = setup_company(client)
    eid = client.post('/expenses', json={"submitter_id": eve, "amount": 12, "currency": "USD", "category": "meals"}).json()['id']
    resp = client.patch(f'/expenses/{eid}', json={"actor_id": eve, "changes": {"original_amount": 15, "date": "2024-01-31"}})
    assert resp.status_code == 200
    assert resp.json()['original_amount'] == 15 and resp.json()['date'] == '2024-01-31'
    resp = client.patch(f'/expenses/{eid}', json={"actor_id": bob, "changes": {"original_amount": 1}})
    assert resp.status_code == 403
