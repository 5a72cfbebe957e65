from typing import Optional


class StatementImportError(Exception):
    """Base for import failures that are the caller's to fix, not server faults."""

    status_code = 400

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.hint = hint


class UnsupportedFormatError(StatementImportError):
    status_code = 415


class DecryptionError(StatementImportError):
    MISSING = "missing"
    INCORRECT = "incorrect"

    def __init__(self, reason: str):
        if reason == self.INCORRECT:
            message = ("PDF is password-protected. The password you provided is incorrect. "
                       "Please check and try again.")
        else:
            message = "PDF is password-protected. Please provide the correct password."
        super().__init__(message)
        self.reason = reason


class ExtractionEmptyError(StatementImportError):
    pass


class NothingToConfirmError(StatementImportError):
    pass


class StagedNotFoundError(StatementImportError):
    status_code = 404
