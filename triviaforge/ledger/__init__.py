from triviaforge.ledger.client import (
    HttpLedgerClient,
    LedgerBusyError,
    LedgerClient,
    LedgerSubmissionError,
    TransactionStatus,
    UnknownOutcomeError,
    get_ledger_client,
)

__all__ = [
    "HttpLedgerClient",
    "LedgerBusyError",
    "LedgerClient",
    "LedgerSubmissionError",
    "TransactionStatus",
    "UnknownOutcomeError",
    "get_ledger_client",
]
