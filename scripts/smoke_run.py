import os, sys, tempfile
from pathlib import Path
# Add project root to sys.path so imports like 'from main import app' work when this script
# is executed from the scripts/ directory.
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))
os.environ.setdefault('DATABASE_URL', 'sqlite:///' + os.path.join(tempfile.mkdtemp(), 'smoke.db'))

from fastapi.testclient import TestClient
from main import app
client = TestClient(app)

print('POST /signup')
r = client.post('/signup', json={"company_name":"Acme Run","country":"India","admin_name":"Alice","admin_email":"alice@acme.run"})
print(r.status_code, r.json())
admin_id = r.json()['admin_id']

print('POST /users (create manager)')
ru = client.post('/users', json={"actor_id": admin_id, "name":"Manager Bob","email":"bob@acme.run","role":"MANAGER"})
print(ru.status_code, ru.json())
print('POST /users (create employee)')
re = client.post('/users', json={"actor_id": admin_id, "name":"Employee Eve","email":"eve@acme.run","role":"EMPLOYEE", "manager_id": ru.json()['id']})
print(re.status_code, re.json())

print('POST /rules (manager chain)')
rr = client.post('/rules', json={"actor_id": admin_id, "name": "Manager chain", "type": "SEQUENTIAL"})
print(rr.status_code, rr.json())

print('POST /expenses (draft by Eve)')
rex = client.post('/expenses', json={"submitter_id": re.json()['id'], "amount": 500.0, "currency": "INR", "category": "meals", "description": "Test lunch"})
print(rex.status_code, rex.json())
expense_id = rex.json()['id']

print('POST /expenses/{id}/submit')
rs = client.post(f'/expenses/{expense_id}/submit', json={"actor_id": re.json()['id']})
print(rs.status_code, rs.json())

print('GET /approvals/user/{manager}/pending')
rp = client.get(f"/approvals/user/{ru.json()['id']}/pending")
print(rp.status_code, rp.json())
if rp.status_code == 200 and rp.json():
    step_id = rp.json()[0]['step_id']
    print('POST /approvals/steps/{id}/decision')
    rd = client.post(f'/approvals/steps/{step_id}/decision', json={"actor_id": ru.json()['id'], "decision": "approve", "comments": "Looks fine"})
    print(rd.status_code, rd.json())

print('GET /expenses/{id}/audit')
ra = client.get(f'/expenses/{expense_id}/audit')
print(ra.status_code, ra.json())
