"""
Transaction-table reconstruction for statement PDFs.

A statement PDF carries no table structure, only words with coordinates. The
pipeline here is:

    words -> PositionedToken -> Row (y-clustered) -> header row -> ColumnAnchors
          -> date-started row groups -> RawTransactionCandidate

Everything after token collection is pure and works on plain PositionedToken
lists, so layouts can be tested without decoding a PDF. Statements with no
recognizable header row go through the line-based fallback instead.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, List, Optional, Sequence, Tuple

import pdfplumber
from pdfminer.pdfdocument import PDFPasswordIncorrect
from pdfplumber.utils.exceptions import PdfminerException

from .errors import DecryptionError, UnsupportedFormatError
from .logging_utils import log_event
from .records import Direction, ExtractionResult, RawTransactionCandidate
from .values import parse_amount, parse_date

ROW_Y_TOLERANCE = 4.0
REFERENCE_X_RADIUS = 60.0
VALUE_DATE_X_RADIUS = 40.0
MIN_HEADER_KEYWORDS = 3

HEADER_KEYWORDS = (
    "date", "narration", "description", "particulars", "withdrawal",
    "deposit", "debit", "credit", "balance", "chq", "ref",
)
TERMINAL_KEYWORDS = ("total", "opening", "closing", "statement")

DATE_TOKEN_RE = re.compile(r"^(?:\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}|\d{1,2}-[A-Za-z]{3}-\d{2,4})$")
DAY_RE = re.compile(r"^\d{1,2}$")
MONTH_ABBR_RE = re.compile(r"^[A-Za-z]{3}$")
YEAR_RE = re.compile(r"^(?:\d{2}|\d{4})$")
NUMERIC_TOKEN_RE = re.compile(r"^[\d,]+\.\d{2}$")
REFERENCE_CODE_RE = re.compile(r"^\d{5,}")

LINE_DATE_RE = re.compile(r"^(\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}|\d{1,2}[\s\-]+[A-Za-z]{3}[\s\-]+\d{2,4})")
LINE_AMOUNT_RE = re.compile(r"(?<![\d.])[\d,]+\.\d{2}(?![\d.])")
LINE_DESC_RE = re.compile(r"^\s*(.*?)\s*(?<![\d.])[\d,]+\.\d{2}(?![\d.])")

CARD_CREDIT_RE = re.compile(r"\b(cr|credit|refund|cashback|reversal|payment\s+received)\b", re.IGNORECASE)


class BankType(str, Enum):
    """Issuer hint. Only biases direction defaults; never changes extraction."""

    HDFC = "hdfc"
    SBI = "sbi"
    ICICI = "icici"
    AXIS = "axis"
    KOTAK = "kotak"
    GENERIC = "generic"


BANK_MARKERS = (
    (BankType.HDFC, ("hdfc bank",)),
    (BankType.SBI, ("state bank of india", "sbi")),
    (BankType.ICICI, ("icici bank",)),
    (BankType.AXIS, ("axis bank",)),
    (BankType.KOTAK, ("kotak",)),
)
CREDIT_CARD_MARKERS = ("credit card", "card number", "card no")


@dataclass(frozen=True)
class PositionedToken:
    text: str
    x: float
    y: float
    page: int


@dataclass
class Row:
    tokens: List[PositionedToken] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "  ".join(t.text for t in self.tokens)

    @property
    def first_text(self) -> str:
        return self.tokens[0].text if self.tokens else ""


@dataclass
class ColumnAnchors:
    date: Optional[float] = None
    value_date: Optional[float] = None
    narration: Optional[float] = None
    reference: Optional[float] = None
    withdrawal: Optional[float] = None
    deposit: Optional[float] = None
    balance: Optional[float] = None

    def amount_columns(self) -> List[Tuple[str, float]]:
        # Order is the tie-break when a figure sits equidistant from two anchors.
        named = (("withdrawal", self.withdrawal), ("deposit", self.deposit), ("balance", self.balance))
        return [(name, x) for name, x in named if x is not None]


# ----------------- Token collection -----------------

def tokens_from_pdf(pdf: Any) -> List[PositionedToken]:
    """
    Collect words with page-local coordinates. pdfplumber measures `bottom`
    from the top edge of the page, so y already grows downward.
    """
    tokens: List[PositionedToken] = []
    for page_no, page in enumerate(pdf.pages, start=1):
        for w in page.extract_words() or []:
            text = str(w.get("text", "")).strip()
            if not text:
                continue
            tokens.append(PositionedToken(
                text=text,
                x=round(float(w.get("x0", 0.0))),
                y=round(float(w.get("bottom", 0.0))),
                page=page_no,
            ))
    return tokens


def cluster_rows(tokens: Iterable[PositionedToken], y_tol: float = ROW_Y_TOLERANCE) -> List[Row]:
    """Group tokens into visual rows: same page, y within y_tol of the row's first token."""
    ordered = sorted(tokens, key=lambda t: (t.page, t.y, t.x))
    rows: List[Row] = []
    row_y = 0.0
    row_page = None
    for tok in ordered:
        if not rows or tok.page != row_page or abs(tok.y - row_y) > y_tol:
            rows.append(Row([tok]))
            row_y = tok.y
            row_page = tok.page
        else:
            rows[-1].tokens.append(tok)
    for row in rows:
        row.tokens.sort(key=lambda t: t.x)
    return rows


# ----------------- Layout detection -----------------

def detect_bank(rows: Sequence[Row]) -> Tuple[BankType, bool]:
    full_text = " ".join(t.text for r in rows for t in r.tokens).lower()
    bank = next(
        (bank for bank, markers in BANK_MARKERS if any(m in full_text for m in markers)),
        BankType.GENERIC,
    )
    is_credit_card = any(m in full_text for m in CREDIT_CARD_MARKERS)
    return bank, is_credit_card


def header_keyword_hits(row: Row) -> int:
    text = row.text.lower()
    return sum(1 for k in HEADER_KEYWORDS if k in text)


def find_header_row(rows: Sequence[Row]) -> Optional[int]:
    for i, row in enumerate(rows):
        if header_keyword_hits(row) >= MIN_HEADER_KEYWORDS:
            return i
    return None


def _header_role(text: str) -> Optional[str]:
    t = text.lower()
    if "value" in t:
        return "value_date"
    if "date" in t:
        return "date"
    if any(k in t for k in ("narration", "description", "particulars", "detail")):
        return "narration"
    if any(k in t for k in ("chq", "ref", "cheque")):
        return "reference"
    if "withdrawal" in t or "debit" in t or t in ("dr", "dr."):
        return "withdrawal"
    if "deposit" in t or "credit" in t or t in ("cr", "cr."):
        return "deposit"
    if "balance" in t or "closing" in t:
        return "balance"
    return None


def infer_anchors(header: Row) -> ColumnAnchors:
    """Take the x of the first header token naming each role as that column's anchor."""
    anchors = ColumnAnchors()
    for tok in header.tokens:
        role = _header_role(tok.text)
        if role and getattr(anchors, role) is None:
            setattr(anchors, role, tok.x)

    if anchors.withdrawal is None and anchors.deposit is None:
        amount_xs = [
            t.x for t in header.tokens
            if "amount" in t.text.lower() or "amt" in t.text.lower()
        ]
        if len(amount_xs) >= 2:
            anchors.withdrawal = min(amount_xs)
            anchors.deposit = max(amount_xs)
    return anchors


# ----------------- Row grouping -----------------

def leading_date(row: Row) -> Optional[Tuple[str, int]]:
    """
    (iso date, token count) when the row opens with a date, either as one token
    (01/02/2024, 15-Jan-2024) or as three word tokens (15 Jan 2024).
    """
    toks = row.tokens
    if not toks:
        return None
    if DATE_TOKEN_RE.match(toks[0].text):
        iso = parse_date(toks[0].text)
        return (iso, 1) if iso else None
    if (
        len(toks) >= 3
        and DAY_RE.match(toks[0].text)
        and MONTH_ABBR_RE.match(toks[1].text)
        and YEAR_RE.match(toks[2].text)
    ):
        iso = parse_date(" ".join(t.text for t in toks[:3]))
        return (iso, 3) if iso else None
    return None


def is_terminal_row(row: Row) -> bool:
    first = row.first_text.lower()
    return any(k in first for k in TERMINAL_KEYWORDS)


def group_transaction_rows(rows: Sequence[Row], start: int) -> List[Tuple[str, int, List[Row]]]:
    """
    Split rows after the header into (date, date token count, rows) groups.
    A dated row opens a group; undated rows continue it until the next dated
    row, a summary row, or a repeated page header.
    """
    groups: List[Tuple[str, int, List[Row]]] = []
    i = start
    while i < len(rows):
        lead = leading_date(rows[i])
        if lead is None:
            i += 1
            continue
        members = [rows[i]]
        j = i + 1
        while j < len(rows):
            nxt = rows[j]
            if leading_date(nxt) is not None or is_terminal_row(nxt):
                break
            if header_keyword_hits(nxt) >= MIN_HEADER_KEYWORDS:
                break
            members.append(nxt)
            j += 1
        groups.append((lead[0], lead[1], members))
        i = j
    return groups


def _nearest_column(x: float, columns: List[Tuple[str, float]]) -> Optional[str]:
    if not columns:
        return None
    # min() keeps the first of equal distances, i.e. withdrawal > deposit > balance.
    return min(columns, key=lambda c: abs(x - c[1]))[0]


def assemble_transaction(
    tx_date: str,
    skip_tokens: int,
    members: Sequence[Row],
    anchors: ColumnAnchors,
    is_credit_card: bool = False,
) -> Optional[RawTransactionCandidate]:
    narration: List[str] = []
    reference: List[str] = []
    values = {"withdrawal": None, "deposit": None, "balance": None}
    columns = anchors.amount_columns()

    tokens = [t for row in members for t in row.tokens][skip_tokens:]
    for tok in tokens:
        text = tok.text
        if NUMERIC_TOKEN_RE.match(re.sub(r"\s", "", text)):
            value = parse_amount(text)
            if value == 0:
                continue
            column = _nearest_column(tok.x, columns)
            if column:
                values[column] = value
        elif anchors.reference is not None and abs(tok.x - anchors.reference) < REFERENCE_X_RADIUS:
            if REFERENCE_CODE_RE.match(text):
                reference.append(text)
            else:
                narration.append(text)
        elif (
            anchors.value_date is not None
            and abs(tok.x - anchors.value_date) < VALUE_DATE_X_RADIUS
            and DATE_TOKEN_RE.match(text)
        ):
            continue
        else:
            narration.append(text)

    description = re.sub(r"\s+", " ", " ".join(narration)).strip()
    if values["withdrawal"]:
        amount, direction = values["withdrawal"], Direction.OUTFLOW
    elif values["deposit"]:
        amount, direction = values["deposit"], Direction.INFLOW
    else:
        return None
    if not description:
        return None

    raw_text = "\n".join(r.text for r in members)
    if is_credit_card:
        direction = Direction.INFLOW if CARD_CREDIT_RE.search(raw_text) else Direction.OUTFLOW
    if reference:
        description = f"{description} [Ref: {' '.join(reference)}]"

    return RawTransactionCandidate(
        date=tx_date,
        description=description,
        amount=amount,
        direction=direction,
        running_balance=values["balance"],
        raw_text=raw_text,
    )


# ----------------- Line-based fallback -----------------

def extract_line_based(rows: Sequence[Row], is_credit_card: bool = False) -> List[RawTransactionCandidate]:
    """
    Headerless statements: every row that starts with a date is a transaction,
    amounts are read positionally from the row text.
    """
    txs: List[RawTransactionCandidate] = []
    for i, row in enumerate(rows):
        line = row.text
        m = LINE_DATE_RE.match(line)
        if not m:
            continue
        tx_date = parse_date(re.sub(r"\s+", " ", m.group(1)))
        if not tx_date:
            continue

        rest = line[m.end():]
        amounts = [parse_amount(a) for a in LINE_AMOUNT_RE.findall(rest)]
        if not amounts:
            continue

        dm = LINE_DESC_RE.match(rest)
        description = re.sub(r"\s+", " ", dm.group(1)).strip() if dm else ""
        if len(description) < 5 and i + 1 < len(rows) and not LINE_DATE_RE.match(rows[i + 1].text):
            description = re.sub(r"\s+", " ", f"{description} {rows[i + 1].text}").strip()

        balance = None
        if len(amounts) >= 3:
            balance = amounts[-1]
            if amounts[0] > 0 and amounts[1] == 0:
                amount, direction = amounts[0], Direction.OUTFLOW
            elif amounts[1] > 0:
                amount, direction = amounts[1], Direction.INFLOW
            else:
                amount, direction = amounts[0], Direction.OUTFLOW
        elif len(amounts) == 2:
            amount, balance, direction = amounts[0], amounts[1], Direction.OUTFLOW
        else:
            amount, direction = amounts[0], Direction.OUTFLOW

        if is_credit_card:
            direction = Direction.INFLOW if CARD_CREDIT_RE.search(line) else Direction.OUTFLOW

        if amount > 0:
            txs.append(RawTransactionCandidate(
                date=tx_date,
                description=description,
                amount=amount,
                direction=direction,
                running_balance=balance,
                raw_text=line,
            ))
    return txs


# ----------------- Entry points -----------------

def reconstruct_transactions(tokens: Iterable[PositionedToken]) -> ExtractionResult:
    rows = cluster_rows(tokens)
    bank, is_credit_card = detect_bank(rows)
    header_idx = find_header_row(rows)
    log_event(
        'info',
        'pdf.layout_detected',
        bank_type=bank.value,
        is_credit_card=is_credit_card,
        rows=len(rows),
        header_row=header_idx,
    )

    result = ExtractionResult(source_kind="pdf", bank_type=bank.value, is_credit_card=is_credit_card)
    if header_idx is None:
        log_event('info', 'pdf.header_not_found', rows=len(rows))
        result.transactions = extract_line_based(rows, is_credit_card)
        return result

    anchors = infer_anchors(rows[header_idx])
    for tx_date, skip, members in group_transaction_rows(rows, header_idx + 1):
        tx = assemble_transaction(tx_date, skip, members, anchors, is_credit_card)
        if tx is not None:
            result.transactions.append(tx)
    return result


def _is_password_failure(exc: Exception) -> bool:
    if isinstance(exc, PDFPasswordIncorrect):
        return True
    cause = exc.args[0] if exc.args else None
    if isinstance(cause, PDFPasswordIncorrect):
        return True
    msg = str(exc).lower()
    return "password" in msg or "encrypt" in msg


def extract_pdf(path: str, password: Optional[str] = None) -> ExtractionResult:
    try:
        pdf = pdfplumber.open(path, password=password or "")
    except (PDFPasswordIncorrect, PdfminerException) as exc:
        if _is_password_failure(exc):
            raise DecryptionError(DecryptionError.INCORRECT if password else DecryptionError.MISSING) from exc
        raise UnsupportedFormatError("Could not read the PDF document.") from exc
    with pdf:
        return reconstruct_transactions(tokens_from_pdf(pdf))
