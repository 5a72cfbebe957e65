import os
import sys
import uuid
from datetime import date
from decimal import Decimal
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))


os.environ.setdefault('DATABASE_URL', 'sqlite:///./.ledgerflow-test.sqlite3')

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from ledgerflow import committer
from ledgerflow.db import SessionLocal, init_db
from ledgerflow.models import Account, CategoryRule, StagedTransaction, STATUS_PENDING, STATUS_REJECTED
from ledgerflow.staging import bulk_update


def new_owner():
    return f'commit_{uuid.uuid4().hex[:10]}'


def open_session():
    init_db()
    return SessionLocal()


def seed_accounts(db, owner):
    bank = Account(user_id=owner, account_name='HDFC Savings', account_type='asset',
                   opening_balance=Decimal('0.00'), current_balance=Decimal('0.00'))
    food = Account(user_id=owner, account_name='Food Expenses', account_type='expense')
    dining = Account(user_id=owner, account_name='Dining Out', account_type='expense')
    db.add_all([bank, food, dining])
    db.commit()
    return bank.account_id, food.account_id, dining.account_id


def stage(db, owner, batch_id, description, debit, credit, category='Food',
          amount='100.00', status=STATUS_PENDING, day=1):
    row = StagedTransaction(
        user_id=owner,
        batch_id=batch_id,
        date=date(2024, 4, day),
        description=description,
        amount=Decimal(amount),
        direction='outflow',
        suggested_category=category,
        suggested_debit_account_id=debit,
        suggested_credit_account_id=credit,
        status=status,
    )
    db.add(row)
    db.commit()
    return row.id


def staged_rows(db, owner):
    return db.scalars(select(StagedTransaction).where(StagedTransaction.user_id == owner)).all()


def test_repeated_pattern_bumps_hits_and_takes_latest_classification():
    owner = new_owner()
    db = open_session()
    try:
        bank, food, dining = seed_accounts(db, owner)
        stage(db, owner, 'b1', 'Coffee Shop 1', food, bank, category='Food')
        stage(db, owner, 'b1', 'Coffee Shop 2', dining, bank, category='Dining', day=2)

        report = committer.confirm_staged(db, owner, 'b1')
        assert report.imported == 2
        assert report.rules_learned == 2

        rule = db.scalar(select(CategoryRule).where(
            CategoryRule.user_id == owner, CategoryRule.pattern == 'coffee shop',
        ))
        assert rule.hit_count == 2
        assert rule.category == 'Dining'
        assert rule.debit_account_id == dining
        assert rule.credit_account_id == bank
    finally:
        db.close()


def test_failed_rows_do_not_stop_the_batch_and_errors_are_capped(monkeypatch):
    owner = new_owner()
    db = open_session()
    try:
        bank, food, _ = seed_accounts(db, owner)
        for n in range(6):
            stage(db, owner, 'b1', f'Broken row {n}', food, bank, amount=f'{n + 1}.00')
        good_id = stage(db, owner, 'b1', 'Grocery Mart', food, bank, amount='250.00')

        real_insert = committer.insert_transaction

        def flaky_insert(session, **kwargs):
            if kwargs['description'].startswith('Broken'):
                raise SQLAlchemyError('disk I/O error')
            return real_insert(session, **kwargs)

        monkeypatch.setattr(committer, 'insert_transaction', flaky_insert)
        report = committer.confirm_staged(db, owner, 'b1')

        assert report.imported == 1
        assert report.failed == 6
        assert report.skipped == 0
        committed = [o for o in report.outcomes if o.kind == committer.OutcomeKind.COMMITTED]
        assert [o.staged_id for o in committed] == [good_id]
        assert committed[0].transaction_id

        assert len(report.errors()) == 5
        assert len(report.to_dict()['errors']) == 5
        assert all('disk I/O error' in e for e in report.errors())

        balances = {a.account_id: a.current_balance for a in db.scalars(
            select(Account).where(Account.user_id == owner)
        )}
        assert balances[food] == Decimal('250.00')
        assert balances[bank] == Decimal('-250.00')
    finally:
        db.close()


def test_confirm_keeps_rows_staged_by_a_concurrent_upload(monkeypatch):
    owner = new_owner()
    db = open_session()
    try:
        bank, food, _ = seed_accounts(db, owner)
        stage(db, owner, 'b1', 'Grocery Mart', food, bank)

        real_commit_row = committer.commit_row
        landed = []

        def commit_while_upload_lands(session, user_id, row):
            if not landed:
                other = SessionLocal()
                try:
                    landed.append(stage(other, owner, 'b2', 'Pharmacy Plus', food, bank, day=3))
                finally:
                    other.close()
            return real_commit_row(session, user_id, row)

        monkeypatch.setattr(committer, 'commit_row', commit_while_upload_lands)
        report = committer.confirm_staged(db, owner)
        assert report.imported == 1

        db.expire_all()
        left = staged_rows(db, owner)
        assert [(r.id, r.batch_id, r.status) for r in left] == [(landed[0], 'b2', STATUS_PENDING)]
    finally:
        db.close()


def test_batch_confirm_clears_its_rejected_rows_only():
    owner = new_owner()
    db = open_session()
    try:
        bank, food, _ = seed_accounts(db, owner)
        stage(db, owner, 'b1', 'Grocery Mart', food, bank)
        stage(db, owner, 'b1', 'Not mine', food, bank, status=STATUS_REJECTED, day=2)
        other_rejected = stage(db, owner, 'b2', 'Also not mine', food, bank, status=STATUS_REJECTED, day=3)

        committer.confirm_staged(db, owner, 'b1')

        db.expire_all()
        assert [r.id for r in staged_rows(db, owner)] == [other_rejected]
    finally:
        db.close()


def test_bulk_update_without_changes_touches_nothing():
    owner = new_owner()
    db = open_session()
    try:
        bank, food, _ = seed_accounts(db, owner)
        row_id = stage(db, owner, 'b1', 'Grocery Mart', food, bank)
        assert bulk_update(db, owner, [row_id], {}) == 0
        assert bulk_update(db, owner, [row_id], {'source_file': 'x.csv'}) == 0
        assert bulk_update(db, owner, [row_id], {'suggested_category': 'Groceries'}) == 1
    finally:
        db.close()
