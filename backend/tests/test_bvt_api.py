import inspect
import io
import os
import sys
import uuid
from decimal import Decimal
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))


os.environ.setdefault('DATABASE_URL', 'sqlite:///./.ledgerflow-test.sqlite3')

from fastapi.testclient import TestClient
from openpyxl import Workbook

from ledgerflow import main as main_module
from ledgerflow.db import SessionLocal, init_db
from ledgerflow.main import app
from ledgerflow.models import Account

STATEMENT_CSV = (
    b'Date,Description,Debit,Credit\n'
    b'01-01-2024,Coffee Shop,150.00,0\n'
    b'02-01-2024,Salary January,0,50000.00\n'
)


def new_owner():
    return f'bvt_{uuid.uuid4().hex[:10]}'


def seed_accounts(owner):
    init_db()
    db = SessionLocal()
    try:
        bank = Account(user_id=owner, account_name='HDFC Savings', account_type='asset',
                       opening_balance=Decimal('1000.00'), current_balance=Decimal('1000.00'))
        food = Account(user_id=owner, account_name='Food Expenses', account_type='expense')
        salary = Account(user_id=owner, account_name='Salary Income', account_type='income')
        db.add_all([bank, food, salary])
        db.commit()
        return bank.account_id, food.account_id, salary.account_id
    finally:
        db.close()


def upload(client, owner, name, content, content_type='text/csv', **form):
    return client.post(
        '/api/import/upload',
        files={'file': (name, content, content_type)},
        data=form,
        headers={'X-User-Id': owner},
    )


def test_health_ok():
    with TestClient(app) as client:
        r = client.get('/health')
        assert r.status_code == 200
        assert r.json() == {'ok': True}


def test_import_endpoints_require_owner():
    with TestClient(app) as client:
        r = client.get('/api/import/staged')
        assert r.status_code == 401
        r = client.post('/api/import/upload', files={'file': ('s.csv', STATEMENT_CSV, 'text/csv')})
        assert r.status_code == 401


def test_upload_review_confirm_roundtrip():
    owner = new_owner()
    bank_id, food_id, salary_id = seed_accounts(owner)
    headers = {'X-User-Id': owner}

    with TestClient(app) as client:
        up = upload(client, owner, 'statement.csv', STATEMENT_CSV, source_account_id=bank_id)
        assert up.status_code == 200
        body = up.json()
        assert body['batch_id'].startswith('batch_')
        assert body['total_parsed'] == 2
        assert body['total_staged'] == 2
        assert body['message'] == 'Parsed 2 transactions. Please review and confirm.'
        batch_id = body['batch_id']

        staged = client.get('/api/import/staged', params={'batch_id': batch_id}, headers=headers).json()
        assert staged['count'] == 2
        coffee, salary = staged['staged']
        assert coffee['date'] == '2024-01-01'
        assert coffee['direction'] == 'outflow'
        assert coffee['amount'] == '150.00'
        assert coffee['suggested_category'] == 'Uncategorized'
        assert coffee['suggested_credit_account_id'] == bank_id
        assert coffee['suggested_debit_account_id'] is None
        assert salary['direction'] == 'inflow'
        assert salary['suggested_category'] == 'Salary'
        assert salary['suggested_debit_account_id'] == bank_id
        assert salary['suggested_credit_account_id'] == salary_id
        assert salary['suggested_credit_name'] == 'Salary Income'

        edit = client.put(
            f"/api/import/staged/{coffee['id']}",
            json={'suggested_category': 'Food', 'suggested_debit_account_id': food_id},
            headers=headers,
        )
        assert edit.status_code == 200
        assert edit.json()['staged']['suggested_category'] == 'Food'
        assert edit.json()['staged']['suggested_debit_account_id'] == food_id

        done = client.post('/api/import/confirm', json={'batch_id': batch_id}, headers=headers)
        assert done.status_code == 200
        result = done.json()
        assert result['imported'] == 2
        assert result['skipped'] == 0
        assert result['message'] == 'Imported 2 transactions'

        left = client.get('/api/import/staged', params={'batch_id': batch_id}, headers=headers).json()
        assert left['count'] == 0

        rules = {r['pattern']: r for r in client.get('/api/import/rules', headers=headers).json()['rules']}
        assert rules['coffee shop']['category'] == 'Food'
        assert rules['coffee shop']['debit_account_id'] == food_id
        assert rules['coffee shop']['hit_count'] == 1
        assert rules['salary january']['category'] == 'Salary'

        balances = {
            a['account_id']: a['current_balance']
            for a in client.get('/api/accounts', headers=headers).json()['accounts']
        }
        assert balances[bank_id] == '50850.00'
        assert balances[food_id] == '150.00'
        assert balances[salary_id] == '-50000.00'

        # Same statement again: the learned rule now classifies the coffee row,
        # and both rows are recognized as already in the ledger.
        again = upload(client, owner, 'statement.csv', STATEMENT_CSV, source_account_id=bank_id).json()
        restaged = client.get('/api/import/staged', params={'batch_id': again['batch_id']}, headers=headers).json()
        coffee_again = restaged['staged'][0]
        assert coffee_again['suggested_category'] == 'Food'
        assert coffee_again['suggested_debit_account_id'] == food_id
        assert coffee_again['confidence'] == 0.75

        second = client.post('/api/import/confirm', json={'batch_id': again['batch_id']}, headers=headers).json()
        assert second['imported'] == 0
        assert second['skipped'] == 2
        assert second['message'] == 'Imported 0 transactions, skipped 2 (duplicates or missing accounts)'


def test_missing_accounts_are_skipped_not_failed():
    owner = new_owner()
    headers = {'X-User-Id': owner}
    with TestClient(app) as client:
        up = upload(client, owner, 'statement.csv', STATEMENT_CSV)
        assert up.status_code == 200
        done = client.post('/api/import/confirm', headers=headers).json()
        assert done['imported'] == 0
        assert done['skipped'] == 2
        assert done['failed'] == 0
        assert client.get('/api/import/staged', headers=headers).json()['count'] == 0


def test_bulk_reject_then_nothing_to_confirm():
    owner = new_owner()
    headers = {'X-User-Id': owner}
    with TestClient(app) as client:
        batch_id = upload(client, owner, 'statement.csv', STATEMENT_CSV).json()['batch_id']
        ids = [r['id'] for r in client.get('/api/import/staged', headers=headers).json()['staged']]

        bulk = client.put(
            '/api/import/staged-bulk',
            json={'ids': ids + [99999999], 'updates': {'status': 'rejected'}},
            headers=headers,
        )
        assert bulk.status_code == 200
        assert bulk.json()['updated'] == 2
        assert client.get('/api/import/staged', headers=headers).json()['count'] == 0

        nothing = client.post('/api/import/confirm', json={'batch_id': batch_id}, headers=headers)
        assert nothing.status_code == 400
        assert nothing.json()['detail'] == 'No transactions to confirm'

        cleared = client.delete('/api/import/staged', params={'batch_id': batch_id}, headers=headers)
        assert cleared.status_code == 200
        assert cleared.json()['deleted'] == 2


def test_staged_rows_are_private_to_owner():
    owner = new_owner()
    with TestClient(app) as client:
        upload(client, owner, 'statement.csv', STATEMENT_CSV)
        row_id = client.get('/api/import/staged', headers={'X-User-Id': owner}).json()['staged'][0]['id']

        other = {'X-User-Id': new_owner()}
        assert client.get('/api/import/staged', headers=other).json()['count'] == 0
        r = client.put(f'/api/import/staged/{row_id}', json={'description': 'hijack'}, headers=other)
        assert r.status_code == 404


def test_upload_xlsx_statement():
    owner = new_owner()
    wb = Workbook()
    ws = wb.active
    ws.append(['Date', 'Narration', 'Withdrawal', 'Deposit', 'Balance'])
    ws.append(['05/02/2024', 'Electricity bill', 1200, None, 8800])
    buf = io.BytesIO()
    wb.save(buf)

    with TestClient(app) as client:
        r = upload(
            client, owner, 'statement.xlsx', buf.getvalue(),
            content_type='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
        )
        assert r.status_code == 200
        assert r.json()['total_staged'] == 1
        row = client.get('/api/import/staged', headers={'X-User-Id': owner}).json()['staged'][0]
        assert row['suggested_category'] == 'Utilities'
        assert row['balance'] == '8800.00'


def test_upload_rejections():
    owner = new_owner()
    with TestClient(app) as client:
        r = upload(client, owner, 'statement.txt', b'hello', content_type='text/plain')
        assert r.status_code == 415
        assert 'hint' in r.json()

        r = upload(client, owner, 'statement.pdf', b'not really a pdf', content_type='application/pdf')
        assert r.status_code == 415

        r = upload(client, owner, 'statement.csv', b'Date,Description,Amount\n')
        assert r.status_code == 400
        assert r.json()['detail'] == 'No transactions found in the file. Please check the format.'
        assert 'CSV' in r.json()['hint']


def test_upload_over_limit_is_413(monkeypatch):
    monkeypatch.setattr(main_module, 'IMPORT_MAX_UPLOAD_BYTES', 16)
    with TestClient(app) as client:
        r = upload(client, new_owner(), 'statement.csv', STATEMENT_CSV)
        assert r.status_code == 413


def test_edit_unknown_row_is_404():
    with TestClient(app) as client:
        r = client.put('/api/import/staged/99999999', json={'description': 'x'}, headers={'X-User-Id': new_owner()})
        assert r.status_code == 404


def test_empty_edits_are_rejected():
    headers = {'X-User-Id': new_owner()}
    with TestClient(app) as client:
        r = client.put('/api/import/staged/1', json={}, headers=headers)
        assert r.status_code == 400
        r = client.put('/api/import/staged-bulk', json={'ids': [], 'updates': {'status': 'rejected'}}, headers=headers)
        assert r.status_code == 400
        r = client.put('/api/import/staged-bulk', json={'ids': [1], 'updates': {}}, headers=headers)
        assert r.status_code == 400
        assert r.json()['detail'] == 'No fields to update.'


def test_upload_runs_off_the_event_loop():
    assert not inspect.iscoroutinefunction(main_module.upload_statement)
