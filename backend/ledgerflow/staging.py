import secrets
import time
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from .errors import StagedNotFoundError
from .logging_utils import log_event
from .models import Account, CategoryRule, StagedTransaction, STATUS_PENDING
from .records import ClassifiedCandidate, RuleSnapshot

# Review-surface fields. Anything else on a staged row is fixed at upload time.
EDITABLE_FIELDS = (
    "suggested_category",
    "suggested_debit_account_id",
    "suggested_credit_account_id",
    "direction",
    "description",
    "amount",
    "status",
)
NULLABLE_ACCOUNT_FIELDS = ("suggested_debit_account_id", "suggested_credit_account_id")


def new_batch_id() -> str:
    return f"batch_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


def load_rule_snapshot(db: Session, user_id: str) -> List[RuleSnapshot]:
    stmt = (
        select(CategoryRule)
        .where(CategoryRule.user_id == user_id)
        .order_by(CategoryRule.hit_count.desc(), CategoryRule.id.asc())
    )
    return [
        RuleSnapshot(
            pattern=r.pattern,
            category=r.category,
            debit_account_id=r.debit_account_id,
            credit_account_id=r.credit_account_id,
            hit_count=r.hit_count,
        )
        for r in db.scalars(stmt).all()
    ]


def list_rules(db: Session, user_id: str, limit: int) -> List[Dict[str, Any]]:
    rows = db.scalars(
        select(CategoryRule)
        .where(CategoryRule.user_id == user_id)
        .order_by(CategoryRule.hit_count.desc(), CategoryRule.id.asc())
        .limit(limit)
    ).all()
    return [
        {
            "id": r.id,
            "pattern": r.pattern,
            "category": r.category,
            "debit_account_id": r.debit_account_id,
            "credit_account_id": r.credit_account_id,
            "hit_count": r.hit_count,
            "updated_at": r.updated_at.isoformat() if r.updated_at else None,
        }
        for r in rows
    ]


def stage_candidates(
    db: Session,
    user_id: str,
    batch_id: str,
    classified: Sequence[ClassifiedCandidate],
    source_file: Optional[str],
) -> Tuple[int, List[str]]:
    """
    Insert one pending row per classified candidate, committing row by row so
    one bad row does not cost the rest of the upload.
    """
    inserted = 0
    errors: List[str] = []
    for idx, item in enumerate(classified, start=1):
        tx = item.candidate
        try:
            db.add(StagedTransaction(
                user_id=user_id,
                batch_id=batch_id,
                date=date.fromisoformat(tx.date),
                description=tx.description,
                amount=tx.amount,
                direction=tx.direction.value,
                balance=tx.running_balance,
                suggested_category=item.suggested_category,
                suggested_debit_account_id=item.suggested_debit_account_id,
                suggested_credit_account_id=item.suggested_credit_account_id,
                confidence=Decimal(str(item.confidence)),
                status=STATUS_PENDING,
                source_file=(source_file or "")[:255] or None,
                raw_text=tx.raw_text or None,
            ))
            db.commit()
            inserted += 1
        except (SQLAlchemyError, ValueError) as exc:
            db.rollback()
            errors.append(f"Row {idx}: {exc}")
            log_event('error', 'import.stage_insert_failed', batch_id=batch_id, row=idx, error=str(exc))
    return inserted, errors


def staged_to_dict(row: StagedTransaction, names: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    out = {
        "id": row.id,
        "batch_id": row.batch_id,
        "date": row.date.isoformat() if row.date else None,
        "description": row.description,
        "amount": f"{row.amount:.2f}" if row.amount is not None else None,
        "direction": row.direction,
        "balance": f"{row.balance:.2f}" if row.balance is not None else None,
        "suggested_category": row.suggested_category,
        "suggested_debit_account_id": row.suggested_debit_account_id,
        "suggested_credit_account_id": row.suggested_credit_account_id,
        "confidence": float(row.confidence or 0),
        "status": row.status,
        "source_file": row.source_file,
    }
    if names is not None:
        out.update(names)
    return out


def list_pending(db: Session, user_id: str, batch_id: Optional[str] = None) -> List[Dict[str, Any]]:
    debit_acc = aliased(Account)
    credit_acc = aliased(Account)
    stmt = (
        select(
            StagedTransaction,
            debit_acc.account_name,
            debit_acc.account_type,
            credit_acc.account_name,
            credit_acc.account_type,
        )
        .outerjoin(debit_acc, StagedTransaction.suggested_debit_account_id == debit_acc.account_id)
        .outerjoin(credit_acc, StagedTransaction.suggested_credit_account_id == credit_acc.account_id)
        .where(StagedTransaction.user_id == user_id, StagedTransaction.status == STATUS_PENDING)
    )
    if batch_id:
        stmt = stmt.where(StagedTransaction.batch_id == batch_id)
    stmt = stmt.order_by(StagedTransaction.date.asc(), StagedTransaction.id.asc())

    return [
        staged_to_dict(row, {
            "suggested_debit_name": debit_name,
            "debit_type": debit_type,
            "suggested_credit_name": credit_name,
            "credit_type": credit_type,
        })
        for row, debit_name, debit_type, credit_name, credit_type in db.execute(stmt).all()
    ]


def _apply_changes(row: StagedTransaction, changes: Dict[str, Any]) -> None:
    for key, value in changes.items():
        if key not in EDITABLE_FIELDS:
            continue
        if key in NULLABLE_ACCOUNT_FIELDS:
            value = value or None
        elif value is None:
            continue
        elif key == "direction":
            value = getattr(value, "value", value)
        setattr(row, key, value)


def update_staged(db: Session, user_id: str, staged_id: int, changes: Dict[str, Any]) -> StagedTransaction:
    row = db.scalar(select(StagedTransaction).where(
        StagedTransaction.id == staged_id,
        StagedTransaction.user_id == user_id,
    ))
    if row is None:
        raise StagedNotFoundError("Not found")
    _apply_changes(row, changes)
    db.commit()
    db.refresh(row)
    return row


def bulk_update(db: Session, user_id: str, ids: Iterable[int], changes: Dict[str, Any]) -> int:
    """Apply one change set to many rows; rows that fail or do not exist are skipped."""
    if not any(key in EDITABLE_FIELDS for key in changes):
        return 0
    updated = 0
    for staged_id in ids:
        try:
            update_staged(db, user_id, int(staged_id), changes)
            updated += 1
        except StagedNotFoundError:
            continue
        except (SQLAlchemyError, ValueError, TypeError) as exc:
            db.rollback()
            log_event('warning', 'import.bulk_update_row_failed', staged_id=staged_id, error=str(exc))
    return updated


def clear_staged(db: Session, user_id: str, batch_id: Optional[str] = None) -> int:
    stmt = delete(StagedTransaction).where(StagedTransaction.user_id == user_id)
    if batch_id:
        stmt = stmt.where(StagedTransaction.batch_id == batch_id)
    result = db.execute(stmt)
    db.commit()
    return int(result.rowcount or 0)
