"""SQLite persistence for jobflow.

- SQLiteJobStorage: JobStore (jobs, access, applications, disputes, history)
- SQLiteCreditLedger: CreditLedger (accounts, transactions, commissions)
- SQLiteClock: ClockService with a persistent event queue
- SQLiteAuditLog: AuditLog for admin actions

All four share one database file; job saves write commissions and
override audit records into the same transaction as the job.
"""

from jobflow.storage.audit import SQLiteAuditLog
from jobflow.storage.clock import SQLiteClock
from jobflow.storage.ledger import SQLiteCreditLedger
from jobflow.storage.schema import SCHEMA_VERSION
from jobflow.storage.sqlite import SQLiteJobStorage, default_db_path, get_jobflow_home

__all__ = [
    "SQLiteJobStorage",
    "SQLiteCreditLedger",
    "SQLiteClock",
    "SQLiteAuditLog",
    "SCHEMA_VERSION",
    "default_db_path",
    "get_jobflow_home",
]
