from stagelock.persistence.interfaces.history_repo import HistoryRepoProtocol
from stagelock.persistence.interfaces.lease_repo import LeaseRepoProtocol
from stagelock.persistence.interfaces.ledger_repo import LedgerRepoProtocol

__all__ = ["LeaseRepoProtocol", "HistoryRepoProtocol", "LedgerRepoProtocol"]
