from foreman.ledger.models import Epic, Handoff, Learning, LedgerStatus, Task
from foreman.ledger.store import LedgerStore

__all__ = ["Epic", "Handoff", "Learning", "LedgerStatus", "LedgerStore", "Task"]
