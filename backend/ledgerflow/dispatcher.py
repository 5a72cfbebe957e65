import os
import tempfile
from contextlib import contextmanager
from typing import Iterator, Optional

from .config import ALLOWED_EXTENSIONS, IMPORT_UPLOAD_DIR
from .errors import ExtractionEmptyError, UnsupportedFormatError
from .logging_utils import log_event
from .pdf_layout import extract_pdf
from .records import ExtractionResult
from .tabular import decode_text, extract_delimited, extract_spreadsheet

PDF_MAGIC = b"%PDF-"
ZIP_MAGIC = b"PK\x03\x04"
OLE_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"

EMPTY_MESSAGE = "No transactions found in the file. Please check the format."
EMPTY_HINTS = {
    "csv": "For CSV: ensure columns like Date, Description, Debit/Credit or Amount exist.",
    "spreadsheet": ("For Excel: keep the transactions on the first sheet with a header row "
                    "such as Date, Description, Debit/Credit or Amount."),
    "pdf": ("For PDF: ensure it contains a transaction table with dated rows. "
            "Scanned (image-only) statements cannot be read."),
}
UNSUPPORTED_HINT = "Only PDF, CSV, and Excel files are supported."


def file_extension(filename: Optional[str]) -> str:
    return os.path.splitext(filename or "")[1].lower()


def detect_format(filename: Optional[str], head: bytes) -> str:
    """Pick an extractor from the extension, cross-checked against the file signature."""
    ext = file_extension(filename)
    if ext not in ALLOWED_EXTENSIONS:
        raise UnsupportedFormatError(f"Unsupported file type '{ext or filename}'.", hint=UNSUPPORTED_HINT)
    if ext == ".pdf":
        if PDF_MAGIC not in head[:1024]:
            raise UnsupportedFormatError("File has a .pdf extension but is not a PDF document.",
                                         hint=UNSUPPORTED_HINT)
        return "pdf"
    if ext in (".xlsx", ".xls"):
        if head.startswith(OLE_MAGIC):
            raise UnsupportedFormatError(
                "Legacy binary Excel workbooks are not supported.",
                hint="Re-save the statement as .xlsx or CSV and upload it again.",
            )
        if head.startswith(ZIP_MAGIC):
            return "spreadsheet"
        # Several banks export CSV text under an .xls name.
        return "csv"
    return "csv"


@contextmanager
def temporary_statement_file(data: bytes, suffix: str) -> Iterator[str]:
    """Spool an uploaded statement to disk; the file is removed on every exit path."""
    fd, path = tempfile.mkstemp(prefix="statement-", suffix=suffix, dir=IMPORT_UPLOAD_DIR)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        yield path
    finally:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            log_event('error', 'import.temp_cleanup_failed', error=str(exc))


def extract_statement(path: str, kind: str, password: Optional[str] = None) -> ExtractionResult:
    if kind == "pdf":
        result = extract_pdf(path, password)
    elif kind == "spreadsheet":
        result = ExtractionResult(transactions=extract_spreadsheet(path), source_kind=kind)
    else:
        with open(path, "rb") as fh:
            text = decode_text(fh.read())
        result = ExtractionResult(transactions=extract_delimited(text), source_kind="csv")

    if not result.transactions:
        raise ExtractionEmptyError(EMPTY_MESSAGE, hint=EMPTY_HINTS.get(kind, EMPTY_HINTS["csv"]))
    return result
