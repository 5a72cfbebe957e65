"""
Confirmation: staged rows -> ledger transactions, then rule learning and a
balance refresh.

Rows are committed one at a time. A failure partway leaves earlier rows in
the ledger and reports the rest; re-running confirm is safe because the
(owner, date, amount, description) duplicate check skips what already landed.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import IMPORT_ERROR_LIMIT
from .errors import NothingToConfirmError
from .ledger import find_duplicate, insert_transaction, recompute_balances
from .logging_utils import log_event
from .models import CategoryRule, StagedTransaction, STATUS_REJECTED, UNCATEGORIZED, utc_now

MAX_PATTERN_WORDS = 4
MIN_PATTERN_LENGTH = 3


class OutcomeKind(str, Enum):
    COMMITTED = "committed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class RowOutcome:
    staged_id: int
    kind: OutcomeKind
    reason: Optional[str] = None
    transaction_id: Optional[str] = None


@dataclass
class ConfirmReport:
    outcomes: List[RowOutcome] = field(default_factory=list)
    rules_learned: int = 0

    def _count(self, kind: OutcomeKind) -> int:
        return sum(1 for o in self.outcomes if o.kind == kind)

    @property
    def imported(self) -> int:
        return self._count(OutcomeKind.COMMITTED)

    @property
    def skipped(self) -> int:
        return self._count(OutcomeKind.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(OutcomeKind.FAILED)

    def errors(self, limit: int = IMPORT_ERROR_LIMIT) -> List[str]:
        return [o.reason or "" for o in self.outcomes if o.kind == OutcomeKind.FAILED][:limit]

    @property
    def message(self) -> str:
        msg = f"Imported {self.imported} transactions"
        if self.skipped > 0:
            msg += f", skipped {self.skipped} (duplicates or missing accounts)"
        return msg

    def to_dict(self) -> Dict[str, Any]:
        return {
            "imported": self.imported,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": self.errors(),
            "message": self.message,
        }


def derive_rule_pattern(description: Optional[str]) -> Optional[str]:
    """First four alphabetic words longer than two letters, lower-cased."""
    words = [w for w in re.sub(r"[^a-zA-Z\s]", " ", description or "").split() if len(w) > 2]
    pattern = " ".join(words[:MAX_PATTERN_WORDS]).lower()
    return pattern if len(pattern) >= MIN_PATTERN_LENGTH else None


def _dialect_insert(db: Session):
    name = db.get_bind().dialect.name
    if name == "postgresql":
        return pg_insert
    if name == "sqlite":
        return sqlite_insert
    return None


def learn_rule(
    db: Session,
    user_id: str,
    pattern: str,
    category: str,
    debit_account_id: Optional[str],
    credit_account_id: Optional[str],
) -> None:
    """
    Upsert (owner, pattern): a new pattern starts at hit_count 1, a known one
    takes the latest category and accounts and gains one hit.
    """
    now = utc_now()
    insert = _dialect_insert(db)
    if insert is not None:
        stmt = insert(CategoryRule).values(
            user_id=user_id,
            pattern=pattern,
            category=category,
            debit_account_id=debit_account_id,
            credit_account_id=credit_account_id,
            hit_count=1,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "pattern"],
            set_={
                "category": stmt.excluded.category,
                "debit_account_id": stmt.excluded.debit_account_id,
                "credit_account_id": stmt.excluded.credit_account_id,
                "hit_count": CategoryRule.hit_count + 1,
                "updated_at": now,
            },
        )
        db.execute(stmt)
        return

    rule = db.scalar(select(CategoryRule).where(
        CategoryRule.user_id == user_id, CategoryRule.pattern == pattern,
    ))
    if rule is None:
        db.add(CategoryRule(
            user_id=user_id,
            pattern=pattern,
            category=category,
            debit_account_id=debit_account_id,
            credit_account_id=credit_account_id,
            hit_count=1,
        ))
    else:
        rule.category = category
        rule.debit_account_id = debit_account_id
        rule.credit_account_id = credit_account_id
        rule.hit_count = (rule.hit_count or 0) + 1
        rule.updated_at = now


@dataclass(frozen=True)
class _StagedSnapshot:
    id: int
    date: Any
    amount: Any
    description: Optional[str]
    category: str
    debit_account_id: Optional[str]
    credit_account_id: Optional[str]


def _snapshot(row: StagedTransaction) -> _StagedSnapshot:
    return _StagedSnapshot(
        id=row.id,
        date=row.date,
        amount=row.amount,
        description=row.description,
        category=row.suggested_category or UNCATEGORIZED,
        debit_account_id=row.suggested_debit_account_id,
        credit_account_id=row.suggested_credit_account_id,
    )


def _skip_reason(row: _StagedSnapshot) -> Optional[str]:
    if not row.debit_account_id or not row.credit_account_id:
        return "missing account"
    if row.debit_account_id == row.credit_account_id:
        return "debit and credit accounts are the same"
    if row.date is None:
        return "missing date"
    if row.amount is None or row.amount <= 0:
        return "amount must be positive"
    return None


def commit_row(db: Session, user_id: str, row: _StagedSnapshot) -> RowOutcome:
    reason = _skip_reason(row)
    if reason:
        return RowOutcome(row.id, OutcomeKind.SKIPPED, reason)
    try:
        if find_duplicate(db, user_id, row.date, row.amount, row.description):
            return RowOutcome(row.id, OutcomeKind.SKIPPED, "duplicate")
        tx = insert_transaction(
            db,
            user_id=user_id,
            tx_date=row.date,
            amount=row.amount,
            description=row.description,
            debit_account_id=row.debit_account_id,
            credit_account_id=row.credit_account_id,
            category=row.category,
        )
        transaction_id = tx.transaction_id
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        log_event('error', 'import.confirm_row_failed', staged_id=row.id, error=str(exc))
        return RowOutcome(row.id, OutcomeKind.FAILED, f"Row {row.id}: {exc}")
    return RowOutcome(row.id, OutcomeKind.COMMITTED, transaction_id=transaction_id)


def reinforce(db: Session, user_id: str, row: _StagedSnapshot) -> bool:
    if row.category == UNCATEGORIZED:
        return False
    pattern = derive_rule_pattern(row.description)
    if not pattern:
        return False
    try:
        learn_rule(db, user_id, pattern, row.category, row.debit_account_id, row.credit_account_id)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        log_event('warning', 'import.rule_learn_failed', staged_id=row.id, pattern=pattern, error=str(exc))
        return False
    return True


def confirm_staged(db: Session, user_id: str, batch_id: Optional[str] = None) -> ConfirmReport:
    stmt = select(StagedTransaction).where(
        StagedTransaction.user_id == user_id,
        StagedTransaction.status != STATUS_REJECTED,
    )
    if batch_id:
        stmt = stmt.where(StagedTransaction.batch_id == batch_id)
    staged = [_snapshot(r) for r in db.scalars(stmt.order_by(StagedTransaction.id.asc())).all()]
    if not staged:
        raise NothingToConfirmError("No transactions to confirm")

    report = ConfirmReport()
    for row in staged:
        outcome = commit_row(db, user_id, row)
        report.outcomes.append(outcome)
        if outcome.kind == OutcomeKind.COMMITTED and reinforce(db, user_id, row):
            report.rules_learned += 1

    # Only rows seen in the snapshot; a concurrent upload keeps its pending rows.
    processed = StagedTransaction.id.in_([row.id for row in staged])
    if batch_id:
        processed = or_(processed, and_(
            StagedTransaction.batch_id == batch_id,
            StagedTransaction.status == STATUS_REJECTED,
        ))
    db.execute(delete(StagedTransaction).where(StagedTransaction.user_id == user_id, processed))
    db.commit()

    try:
        recompute_balances(db, user_id)
    except SQLAlchemyError as exc:
        db.rollback()
        log_event('warning', 'import.balance_refresh_failed', error=str(exc))

    log_event(
        'info',
        'import.confirmed',
        batch_id=batch_id,
        imported=report.imported,
        skipped=report.skipped,
        failed=report.failed,
        rules_learned=report.rules_learned,
    )
    return report
