from fastapi import Request
from medpool.ledger import LedgerStore


def get_ledger(request: Request) -> LedgerStore:
    ledger: LedgerStore = request.app.state.ledger
    # Another worker may have written since our last request
    ledger.sync()
    return ledger
