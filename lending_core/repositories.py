"""
Repositories Module

Persistence contracts the engine needs, implemented over StorageInterface:
loans with their installments, the append-only ledger, agreements with their
installments, and capital sources with atomic balance adjustment.
"""

from decimal import Decimal
from typing import List, Optional

from .errors import ConsistencyError, NotFoundError
from .logging_config import get_logger
from .models import (
    Agreement, AgreementInstallment, AgreementStatus, CapitalSource, Installment,
    LedgerEntry, Loan,
)
from .storage import StorageInterface

logger = get_logger("lending.repositories")


class LoanRepository:
    """Loads and saves loans together with their installments"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.loans_table = "loans"
        self.installments_table = "installments"

    def get(self, loan_id: str) -> Loan:
        """
        Load a loan and its installments ordered by number.

        Raises:
            NotFoundError: If the loan does not exist
        """
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise NotFoundError(f"Loan {loan_id} not found")
        loan = Loan.from_dict(data)
        loan.installments = self.list_installments(loan_id)
        return loan

    def exists(self, loan_id: str) -> bool:
        return self.storage.exists(self.loans_table, loan_id)

    def list_loans(self, include_archived: bool = False) -> List[Loan]:
        loans = []
        for data in self.storage.load_all(self.loans_table):
            loan = Loan.from_dict(data)
            if loan.is_archived and not include_archived:
                continue
            loan.installments = self.list_installments(loan.id)
            loans.append(loan)
        return loans

    def list_installments(self, loan_id: str) -> List[Installment]:
        rows = self.storage.find(self.installments_table, {"loan_id": loan_id})
        installments = [Installment.from_dict(row) for row in rows]
        installments.sort(key=lambda inst: inst.number)
        return installments

    def get_installment(self, installment_id: str) -> Installment:
        data = self.storage.load(self.installments_table, installment_id)
        if not data:
            raise NotFoundError(f"Installment {installment_id} not found")
        return Installment.from_dict(data)

    def save(self, loan: Loan) -> None:
        """
        Save the loan header and replace its installment set.

        Installment ids are kept as given, so an edit that reuses ids keeps
        each installment's identity. Installments no longer in the loan are
        removed. Every installment already stored must carry the stored
        version, as in ``save_installment``.

        Raises:
            ConsistencyError: If a stored installment was modified since it was loaded
        """
        with self.storage.atomic():
            stored_rows = {
                row["id"]: row
                for row in self.storage.find(self.installments_table, {"loan_id": loan.id})
            }
            for inst in loan.installments:
                stored = stored_rows.get(inst.id)
                if stored is not None and int(stored.get("version", 0)) != inst.version:
                    raise ConsistencyError(
                        f"Installment {inst.id} changed concurrently "
                        f"(expected version {inst.version}, found {stored.get('version')})"
                    )

            self.storage.save(self.loans_table, loan.id, loan.to_dict())
            keep = {inst.id for inst in loan.installments}
            for installment_id in stored_rows:
                if installment_id not in keep:
                    self.storage.delete(self.installments_table, installment_id)
            for inst in loan.installments:
                if inst.id in stored_rows:
                    inst.version += 1
                self.storage.save(self.installments_table, inst.id, inst.to_dict())

    def save_header(self, loan: Loan) -> None:
        """Save loan fields without touching installments"""
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def save_installment(self, installment: Installment) -> Installment:
        """
        Save one installment with an optimistic version check.

        The stored version must equal ``installment.version``; on success the
        version is bumped.

        Raises:
            ConsistencyError: If the installment was modified since it was loaded
        """
        with self.storage.atomic():
            stored = self.storage.load(self.installments_table, installment.id)
            if stored is not None and int(stored.get("version", 0)) != installment.version:
                raise ConsistencyError(
                    f"Installment {installment.id} changed concurrently "
                    f"(expected version {installment.version}, found {stored.get('version')})"
                )
            installment.version += 1
            self.storage.save(self.installments_table, installment.id, installment.to_dict())
        return installment


class LedgerRepository:
    """
    Append-only store of ledger entries.

    Offers no update or delete operation.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "ledger_entries"

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """
        Append an entry.

        Raises:
            ConsistencyError: If an entry with the same id already exists
        """
        with self.storage.atomic():
            if self.storage.exists(self.table_name, entry.id):
                raise ConsistencyError(f"Ledger entry {entry.id} already recorded")
            data = entry.to_dict()
            data["seq"] = self.storage.count(self.table_name) + 1
            self.storage.save(self.table_name, entry.id, data)
        return entry

    def get(self, entry_id: str) -> LedgerEntry:
        data = self.storage.load(self.table_name, entry_id)
        if not data:
            raise NotFoundError(f"Ledger entry {entry_id} not found")
        return LedgerEntry.from_dict(data)

    def list_for_loan(self, loan_id: str) -> List[LedgerEntry]:
        """Entries of a loan ordered by date, then by append order"""
        rows = self.storage.find(self.table_name, {"loan_id": loan_id})
        rows.sort(key=lambda row: (row["entry_date"], row.get("seq", 0)))
        return [LedgerEntry.from_dict(row) for row in rows]

    def list_for_source(self, source_id: str) -> List[LedgerEntry]:
        """Entries moving a capital source, in append order"""
        rows = self.storage.find(self.table_name, {"source_id": source_id})
        rows.sort(key=lambda row: row.get("seq", 0))
        return [LedgerEntry.from_dict(row) for row in rows]

    def find_reversal_of(self, entry_id: str) -> Optional[LedgerEntry]:
        rows = self.storage.find(self.table_name, {"reverses": entry_id})
        return LedgerEntry.from_dict(rows[0]) if rows else None


class AgreementRepository:
    """Agreements and their installments"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.agreements_table = "agreements"
        self.installments_table = "agreement_installments"

    def create(self, agreement: Agreement) -> Agreement:
        """Persist header and installments as one unit"""
        with self.storage.atomic():
            self.storage.save(self.agreements_table, agreement.id, agreement.to_dict())
            for inst in agreement.installments:
                self.storage.save(self.installments_table, inst.id, inst.to_dict())
        return agreement

    def get(self, agreement_id: str) -> Agreement:
        data = self.storage.load(self.agreements_table, agreement_id)
        if not data:
            raise NotFoundError(f"Agreement {agreement_id} not found")
        agreement = Agreement.from_dict(data)
        rows = self.storage.find(self.installments_table, {"agreement_id": agreement_id})
        agreement.installments = sorted(
            (AgreementInstallment.from_dict(row) for row in rows), key=lambda i: i.number
        )
        return agreement

    def list_for_loan(self, loan_id: str) -> List[Agreement]:
        rows = self.storage.find(self.agreements_table, {"loan_id": loan_id})
        return [self.get(row["id"]) for row in rows]

    def find_active_for_loan(self, loan_id: str) -> Optional[Agreement]:
        rows = self.storage.find(self.agreements_table, {
            "loan_id": loan_id,
            "status": AgreementStatus.ACTIVE.value,
        })
        return self.get(rows[0]["id"]) if rows else None

    def save_installment(self, installment: AgreementInstallment) -> None:
        self.storage.save(self.installments_table, installment.id, installment.to_dict())

    def update_status(self, agreement: Agreement) -> None:
        self.storage.save(self.agreements_table, agreement.id, agreement.to_dict())


class CapitalSourceRepository:
    """Capital sources; balances change only through ``adjust_balance`` and ``adjust_profit``"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "capital_sources"

    def create(self, source: CapitalSource) -> CapitalSource:
        self.storage.save(self.table_name, source.id, source.to_dict())
        return source

    def get(self, source_id: str) -> CapitalSource:
        data = self.storage.load(self.table_name, source_id)
        if not data:
            raise NotFoundError(f"Capital source {source_id} not found")
        return CapitalSource.from_dict(data)

    def adjust_balance(self, source_id: str, delta: Decimal) -> Decimal:
        """
        Atomically add ``delta`` to the source balance.

        Executed once per cash event. Not idempotent: calling it twice moves
        the balance twice. The balance may go negative.

        Returns:
            The new balance
        """
        new_balance = self.storage.increment(self.table_name, source_id, "balance", delta)
        logger.debug(f"Source {source_id} adjusted by {delta}, balance now {new_balance}")
        return new_balance

    def adjust_profit(self, source_id: str, delta: Decimal) -> Decimal:
        """Atomically add ``delta`` to the source's accumulated profit"""
        new_profit = self.storage.increment(self.table_name, source_id, "profit_balance", delta)
        logger.debug(f"Source {source_id} profit adjusted by {delta}, profit now {new_profit}")
        return new_profit
