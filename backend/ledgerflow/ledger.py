"""
The slice of the double-entry ledger that imports talk to: reading the chart
of accounts, the duplicate check, writing transactions and asking for
balances to be recomputed.
"""

from datetime import date
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from .models import Account, LedgerTransaction
from .records import AccountRef


def list_accounts(db: Session, user_id: str) -> List[Account]:
    return list(db.scalars(
        select(Account)
        .where(Account.user_id == user_id)
        .order_by(Account.account_type, Account.account_name)
    ).all())


def account_refs(db: Session, user_id: str) -> List[AccountRef]:
    return [
        AccountRef(
            account_id=a.account_id,
            account_name=a.account_name,
            account_type=a.account_type,
            sub_type=a.sub_type,
        )
        for a in list_accounts(db, user_id)
    ]


def find_duplicate(
    db: Session, user_id: str, tx_date: date, amount: Decimal, description: Optional[str]
) -> Optional[str]:
    """Ledger transaction id matching (owner, date, amount, description), if any."""
    stmt = select(LedgerTransaction.transaction_id).where(
        LedgerTransaction.user_id == user_id,
        LedgerTransaction.date == tx_date,
        LedgerTransaction.amount == amount,
    )
    if description is None:
        stmt = stmt.where(LedgerTransaction.description.is_(None))
    else:
        stmt = stmt.where(LedgerTransaction.description == description)
    return db.scalar(stmt.limit(1))


def insert_transaction(
    db: Session,
    *,
    user_id: str,
    tx_date: date,
    amount: Decimal,
    description: Optional[str],
    debit_account_id: str,
    credit_account_id: str,
    category: str,
    source: str = "import",
) -> LedgerTransaction:
    row = LedgerTransaction(
        user_id=user_id,
        date=tx_date,
        amount=amount,
        description=description,
        debit_account_id=debit_account_id,
        credit_account_id=credit_account_id,
        category=category,
        source=source,
    )
    db.add(row)
    db.flush()
    return row


def recompute_balances(db: Session, user_id: str) -> int:
    """
    current_balance = opening_balance + debits - credits over the whole ledger,
    for every account the owner has. Returns the number of accounts touched.
    """
    accounts = list_accounts(db, user_id)
    if not accounts:
        return 0

    debit_sum = func.coalesce(func.sum(case(
        (LedgerTransaction.debit_account_id == Account.account_id, LedgerTransaction.amount),
        else_=0,
    )), 0)
    credit_sum = func.coalesce(func.sum(case(
        (LedgerTransaction.credit_account_id == Account.account_id, LedgerTransaction.amount),
        else_=0,
    )), 0)
    totals = {
        account_id: (Decimal(str(dr)), Decimal(str(cr)))
        for account_id, dr, cr in db.execute(
            select(Account.account_id, debit_sum, credit_sum)
            .join(
                LedgerTransaction,
                (LedgerTransaction.debit_account_id == Account.account_id)
                | (LedgerTransaction.credit_account_id == Account.account_id),
            )
            .where(Account.user_id == user_id)
            .group_by(Account.account_id)
        ).all()
    }
    for acc in accounts:
        dr, cr = totals.get(acc.account_id, (Decimal("0"), Decimal("0")))
        acc.current_balance = (Decimal(acc.opening_balance or 0) + dr - cr).quantize(Decimal("0.01"))
    db.commit()
    return len(accounts)
