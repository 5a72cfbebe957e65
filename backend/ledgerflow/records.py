from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Optional


class Direction(str, Enum):
    OUTFLOW = "outflow"
    INFLOW = "inflow"


@dataclass(frozen=True)
class RawTransactionCandidate:
    """One statement line as recovered by an extractor, before classification."""

    date: str  # YYYY-MM-DD
    description: str
    amount: Decimal
    direction: Direction
    running_balance: Optional[Decimal] = None
    raw_text: str = ""


@dataclass(frozen=True)
class Classification:
    category: str
    confidence: float
    debit_account_id: Optional[str] = None
    credit_account_id: Optional[str] = None


@dataclass(frozen=True)
class AccountRef:
    account_id: str
    account_name: str
    account_type: str
    sub_type: Optional[str] = None


@dataclass(frozen=True)
class RuleSnapshot:
    pattern: str
    category: Optional[str]
    debit_account_id: Optional[str]
    credit_account_id: Optional[str]
    hit_count: int


@dataclass(frozen=True)
class ClassifiedCandidate:
    candidate: RawTransactionCandidate
    suggested_category: str
    suggested_debit_account_id: Optional[str]
    suggested_credit_account_id: Optional[str]
    confidence: float


@dataclass
class ExtractionResult:
    transactions: List[RawTransactionCandidate] = field(default_factory=list)
    source_kind: str = ""
    bank_type: Optional[str] = None
    is_credit_card: bool = False
