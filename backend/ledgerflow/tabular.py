import csv
import io
import zipfile
from datetime import date, datetime
from decimal import Decimal
from typing import Any, BinaryIO, Dict, List, Optional, Sequence, Union

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from .errors import UnsupportedFormatError
from .records import Direction, RawTransactionCandidate
from .values import parse_amount, parse_date, parse_signed_amount

# Role -> header synonyms, highest priority first. Roles are claimed in this
# order and a column can serve one role only; "type" goes before debit/credit
# so that a "Cr/Dr" column is not mistaken for a debit column.
COLUMN_SYNONYMS = (
    ("date", ("date", "txn date", "transaction date", "value date", "posting date")),
    ("description", ("description", "narration", "particulars", "details", "transaction remarks", "remarks")),
    ("type", ("type", "cr/dr", "transaction type")),
    ("balance", ("balance", "closing balance", "available balance", "running balance")),
    ("debit", ("debit", "withdrawal", "dr", "withdrawal amt", "withdrawal amount")),
    ("credit", ("credit", "deposit", "cr", "deposit amt", "deposit amount")),
    ("amount", ("amount", "transaction amount")),
)

CREDIT_TYPE_VALUES = {"cr", "credit", "c"}

# Bank exports often open with a few lines of account details before the table.
HEADER_SCAN_ROWS = 30


def _normalize_header(name: Any) -> str:
    return " ".join(str(name or "").strip().split()).lower()


def infer_columns(headers: Sequence[Any]) -> Dict[str, int]:
    """Map semantic roles to column indexes by substring match on header text."""
    normalized = [_normalize_header(h) for h in headers]
    claimed: Dict[str, int] = {}
    for role, synonyms in COLUMN_SYNONYMS:
        taken = set(claimed.values())
        for name in synonyms:
            idx = next(
                (i for i, h in enumerate(normalized) if i not in taken and h and name in h),
                None,
            )
            if idx is not None:
                claimed[role] = idx
                break
    return claimed


def _looks_like_header(cols: Dict[str, int]) -> bool:
    return "date" in cols and ("amount" in cols or ("debit" in cols and "credit" in cols))


def _locate_header(rows: List[List[str]]) -> int:
    for i, row in enumerate(rows[:HEADER_SCAN_ROWS]):
        if _looks_like_header(infer_columns(row)):
            return i
    return 0


def _cell(row: Sequence[str], idx: Optional[int]) -> str:
    if idx is None or idx >= len(row):
        return ""
    return (row[idx] or "").strip()


def _direction_of(row: Sequence[str], cols: Dict[str, int]) -> Optional[tuple]:
    debit_idx, credit_idx = cols.get("debit"), cols.get("credit")
    if debit_idx is not None and credit_idx is not None:
        dr = parse_amount(_cell(row, debit_idx))
        cr = parse_amount(_cell(row, credit_idx))
        if dr > 0:
            return dr, Direction.OUTFLOW
        if cr > 0:
            return cr, Direction.INFLOW
        return None

    amount_idx = cols.get("amount")
    if amount_idx is None:
        return None
    raw = _cell(row, amount_idx)
    amount = parse_amount(raw)
    if amount == 0:
        return None
    if "type" in cols:
        kind = _cell(row, cols["type"]).lower()
        return amount, Direction.INFLOW if kind in CREDIT_TYPE_VALUES else Direction.OUTFLOW
    signed = parse_signed_amount(raw)
    if signed is not None and signed >= 0:
        return amount, Direction.INFLOW
    return amount, Direction.OUTFLOW


def extract_delimited(text: str) -> List[RawTransactionCandidate]:
    """
    Parse a comma-separated statement export into candidates.

    Separate debit/credit columns decide direction by whichever is non-zero
    (debit wins a tie); a lone amount column uses the type column when present,
    else the sign of the value. Rows without a usable date or amount are skipped.
    """
    rows = [r for r in csv.reader(io.StringIO(text)) if any((c or "").strip() for c in r)]
    if not rows:
        return []
    header_idx = _locate_header(rows)
    cols = infer_columns(rows[header_idx])

    txs: List[RawTransactionCandidate] = []
    for row in rows[header_idx + 1:]:
        tx_date = parse_date(_cell(row, cols.get("date")))
        if not tx_date:
            continue
        resolved = _direction_of(row, cols)
        if resolved is None:
            continue
        amount, direction = resolved
        balance: Optional[Decimal] = None
        if "balance" in cols:
            balance = parse_signed_amount(_cell(row, cols["balance"]))
        txs.append(RawTransactionCandidate(
            date=tx_date,
            description=_cell(row, cols.get("description")),
            amount=amount,
            direction=direction,
            running_balance=balance,
            raw_text=",".join(c.strip() for c in row),
        ))
    return txs


def decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def _cell_to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def spreadsheet_to_delimited(source: Union[str, BinaryIO]) -> str:
    """Render the first worksheet of a workbook as CSV text."""
    try:
        wb = load_workbook(source, read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError) as exc:
        raise UnsupportedFormatError(
            "Could not read the spreadsheet.",
            hint="Legacy .xls workbooks are not readable; re-save the statement as .xlsx or CSV.",
        ) from exc
    try:
        ws = wb.worksheets[0]
        out = io.StringIO()
        writer = csv.writer(out)
        for row in ws.iter_rows(values_only=True):
            writer.writerow([_cell_to_text(v) for v in row])
        return out.getvalue()
    finally:
        wb.close()


def extract_spreadsheet(source: Union[str, BinaryIO]) -> List[RawTransactionCandidate]:
    return extract_delimited(spreadsheet_to_delimited(source))
