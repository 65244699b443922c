from stagelock.persistence.sqlite.history_repo import SqliteHistoryRepo
from stagelock.persistence.sqlite.lease_repo import SqliteLeaseRepo
from stagelock.persistence.sqlite.ledger_repo import SqliteLedgerRepo

__all__ = ["SqliteLeaseRepo", "SqliteHistoryRepo", "SqliteLedgerRepo"]
