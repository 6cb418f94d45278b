"""
Main Orchestrator for Fintrack

This module ties together all the components and defines the
end-to-end flows for the user actions that touch more than one store:
1. Transactions (income with optional distribution, expense, transfer, delete)
2. Buckets (create, edit, delete with explicit funding state)

Investment operations live on fintrack.accounting.PortfolioManager and are
exposed through the same component factory.

DESIGN DECISION: The orchestrator enforces the boundaries:
- Validation runs before the first write
- Aggregates are written with a versioned update, ledger rows after
- A failure after the first write is surfaced, never hidden
- Every step is audited

Transfer rows follow the single-entry convention: the row is owned by one
bucket (`bucket_id`) and its amount is the NEGATIVE of the change applied
to that bucket. Reversing a bucket row is therefore `balance += amount`
(expenses excepted: they carry their own negative sign).
"""

from datetime import date
from decimal import Decimal
from typing import NamedTuple, Optional
from uuid import UUID

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random,
)

from fintrack.accounting import (
    BalanceService,
    IncomeDistributor,
    PortfolioManager,
    capping_changes,
)
from fintrack.audit import AuditLogger, create_correlation_id
from fintrack.errors import (
    InsufficientLiquidityError,
    PartialApplicationError,
    ValidationError,
)
from fintrack.models.audit import AuditEventType
from fintrack.models.ledger import (
    Bucket,
    BucketState,
    Transaction,
    TransactionFilter,
    TransactionType,
)
from fintrack.models.money import ZERO, round_currency
from fintrack.models.results import AllocationResult, ReversalResult
from fintrack.queries import LedgerQueryExecutor
from fintrack.services.market import MarketDataProvider
from fintrack.services.storage import (
    BucketStorageInterface,
    InMemoryAuditStorage,
    InMemoryBucketStorage,
    InMemoryCategoryStorage,
    InMemoryDatabase,
    InMemoryInvestmentStorage,
    InMemoryProfileStorage,
    InMemoryTransactionStorage,
    NotFoundError,
    TransactionStorageInterface,
    VersionConflictError,
)
from fintrack.validation import LedgerValidator


class TransactionFlow:
    """
    Orchestrates ledger writes that also move bucket balances.

    Flow for every write:
    1. Validate → abort with nothing written
    2. Update the affected bucket(s) with compare-and-set
    3. Append or delete the ledger row(s)
    4. Audit
    """

    def __init__(
        self,
        transaction_storage: TransactionStorageInterface,
        bucket_storage: BucketStorageInterface,
        portfolio: PortfolioManager,
        distributor: Optional[IncomeDistributor] = None,
        validator: Optional[LedgerValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._transactions = transaction_storage
        self._buckets = bucket_storage
        self._portfolio = portfolio
        self._distributor = distributor or IncomeDistributor(
            transaction_storage, bucket_storage, audit_logger
        )
        self._validator = validator or LedgerValidator()
        self._audit_logger = audit_logger

    async def record_income(
        self,
        user_id: str,
        amount: Decimal,
        tx_date: date,
        category_id: Optional[UUID] = None,
        description: str = "",
        auto_distribute: bool = False,
        correlation_id: Optional[UUID] = None,
    ) -> tuple[Transaction, Optional[AllocationResult]]:
        """
        Record an income, optionally running the waterfall on it.

        Returns:
            (income_row, allocation_result or None)

        Raises:
            PartialApplicationError: The income was saved but its
                distribution failed or stopped partway
        """
        correlation_id = correlation_id or create_correlation_id()
        amount = await self._validated_amount(user_id, "record_income", amount, correlation_id)

        income = Transaction(
            user_id=user_id,
            amount=amount,
            type=TransactionType.INCOME,
            date=tx_date,
            category_id=category_id,
            description=description,
        )
        await self._transactions.append_transaction(income)
        await self._log_recorded(income, correlation_id)

        if not auto_distribute:
            return income, None

        applied = [f"transaction {income.id} appended"]
        try:
            allocation = await self._distributor.distribute(income, correlation_id)
        except PartialApplicationError as e:
            raise PartialApplicationError(
                f"Income {income.id} saved, distribution incomplete", applied + e.applied
            ) from e
        except Exception as e:
            # The income row is already stored
            raise PartialApplicationError(
                f"Income {income.id} saved, distribution failed: {e}", applied
            ) from e
        return income, allocation

    async def record_expense(
        self,
        user_id: str,
        amount: Decimal,
        tx_date: date,
        category_id: Optional[UUID] = None,
        bucket_id: Optional[UUID] = None,
        description: str = "",
        correlation_id: Optional[UUID] = None,
    ) -> Transaction:
        """
        Record an expense, paid from unassigned liquidity or from a bucket.
        """
        correlation_id = correlation_id or create_correlation_id()
        amount = await self._validated_amount(user_id, "record_expense", amount, correlation_id)

        expense = Transaction(
            user_id=user_id,
            amount=-amount,
            type=TransactionType.EXPENSE,
            date=tx_date,
            category_id=category_id,
            bucket_id=bucket_id,
            description=description,
        )
        if bucket_id is None:
            await self._transactions.append_transaction(expense)
        else:
            await self._with_bucket_moves(
                user_id,
                "record_expense",
                {bucket_id: -amount},
                expense,
                correlation_id,
            )
        await self._log_recorded(expense, correlation_id)
        return expense

    async def record_transfer(
        self,
        user_id: str,
        amount: Decimal,
        tx_date: date,
        source_bucket_id: Optional[UUID] = None,
        destination_bucket_id: Optional[UUID] = None,
        description: str = "",
        correlation_id: Optional[UUID] = None,
    ) -> Transaction:
        """
        Move money between unassigned liquidity and buckets.

        - destination only: unassigned → bucket
        - source only: bucket → unassigned
        - both: bucket → bucket, recorded on the source

        Raises:
            ValidationError: No bucket given, or the same bucket twice
            InsufficientLiquidityError: Source bucket holds less than amount
        """
        correlation_id = correlation_id or create_correlation_id()
        amount = await self._validated_amount(user_id, "record_transfer", amount, correlation_id)

        if source_bucket_id is None and destination_bucket_id is None:
            raise ValidationError("A transfer needs a source or a destination bucket")
        if source_bucket_id == destination_bucket_id:
            raise ValidationError("Source and destination bucket must differ")

        if source_bucket_id is not None:
            source = await self._require_bucket(source_bucket_id)
            if source.current_balance < amount:
                raise InsufficientLiquidityError(amount, source.current_balance)

        moves: dict[UUID, Decimal] = {}
        if source_bucket_id is not None:
            moves[source_bucket_id] = -amount
            owner, row_amount = source_bucket_id, amount
        if destination_bucket_id is not None:
            moves[destination_bucket_id] = amount
            if source_bucket_id is None:
                owner, row_amount = destination_bucket_id, -amount

        transfer = Transaction(
            user_id=user_id,
            amount=row_amount,
            type=TransactionType.TRANSFER,
            date=tx_date,
            bucket_id=owner,
            destination_bucket_id=(
                destination_bucket_id if source_bucket_id is not None else None
            ),
            description=description,
        )
        await self._with_bucket_moves(
            user_id, "record_transfer", moves, transfer, correlation_id
        )
        await self._log_recorded(transfer, correlation_id)
        return transfer

    async def delete_transaction(
        self,
        transaction_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> ReversalResult:
        """
        Delete a row and roll back what it did.

        - Investment-linked rows: position reversal (best effort)
        - Income: its automatic distribution transfers are reversed too
        - Bucket rows: the bucket balance is restored
        """
        correlation_id = correlation_id or create_correlation_id()
        tx = await self._transactions.get_transaction(transaction_id)
        if tx is None:
            raise NotFoundError(f"Transaction not found: {transaction_id}")

        if tx.investment_id is not None:
            result = await self._portfolio.reverse_transaction(tx.id, correlation_id)
        else:
            result = await self._delete_with_rollback(tx, correlation_id)

        if self._audit_logger:
            await self._audit_logger.log_transaction_deleted(
                user_id=tx.user_id,
                transaction_id=tx.id,
                cascaded=[i for i in result.deleted_transaction_ids if i != tx.id],
                correlation_id=correlation_id,
            )
        return result

    @retry(
        retry=retry_if_exception_type(VersionConflictError),
        stop=stop_after_attempt(3),
        wait=wait_random(0, 0.05),
        reraise=True,
    )
    async def _delete_with_rollback(
        self,
        tx: Transaction,
        correlation_id: UUID,
    ) -> ReversalResult:
        rows = [tx]
        if tx.type == TransactionType.INCOME:
            rows = await self._transactions.query_transactions(
                tx.user_id,
                TransactionFilter(source_transaction_id=tx.id),
            ) + [tx]

        # Bucket deltas that undo every row, merged per bucket
        restore: dict[UUID, Decimal] = {}
        for row in rows:
            for bucket_id, delta in self._undo_moves(row).items():
                restore[bucket_id] = restore.get(bucket_id, ZERO) + delta

        applied: list[str] = []
        restored: list[UUID] = []
        deleted: list[UUID] = []
        try:
            for bucket_id, delta in restore.items():
                bucket = await self._buckets.get_bucket(bucket_id)
                if bucket is None:
                    continue
                new_balance = max(ZERO, round_currency(bucket.current_balance + delta))
                await self._buckets.update_bucket(
                    bucket_id, {"current_balance": new_balance}, bucket.version
                )
                restored.append(bucket_id)
                applied.append(f"bucket {bucket_id} balance {bucket.current_balance} -> {new_balance}")
            for row in rows:
                if await self._transactions.delete_transaction(row.id):
                    deleted.append(row.id)
                    applied.append(f"transaction {row.id} deleted")
        except Exception as e:
            if not applied:
                raise
            raise await self._partial(tx.user_id, "delete_transaction", e, applied, correlation_id) from e

        return ReversalResult(deleted_transaction_ids=deleted, restored_bucket_ids=restored)

    @staticmethod
    def _undo_moves(row: Transaction) -> dict[UUID, Decimal]:
        if row.bucket_id is None:
            return {}
        if row.type == TransactionType.EXPENSE:
            return {row.bucket_id: abs(row.amount)}
        moves = {row.bucket_id: row.amount}
        if row.destination_bucket_id is not None:
            moves[row.destination_bucket_id] = -row.amount
        return moves

    @retry(
        retry=retry_if_exception_type(VersionConflictError),
        stop=stop_after_attempt(3),
        wait=wait_random(0, 0.05),
        reraise=True,
    )
    async def _with_bucket_moves(
        self,
        user_id: str,
        operation: str,
        moves: dict[UUID, Decimal],
        row: Transaction,
        correlation_id: UUID,
    ) -> None:
        """
        Apply balance deltas to buckets, then append the row.

        A bucket whose balance reaches its target is capped in the same
        versioned update.
        """
        buckets = [await self._require_bucket(bucket_id) for bucket_id in moves]

        applied: list[str] = []
        capped: list[Bucket] = []
        try:
            for bucket in buckets:
                new_balance = round_currency(bucket.current_balance + moves[bucket.id])
                changes: dict = {"current_balance": new_balance}
                candidate = bucket.model_copy(update=changes)
                if candidate.target_reached and bucket.state != BucketState.CAPPED:
                    changes.update(capping_changes(bucket))
                try:
                    updated = await self._buckets.update_bucket(
                        bucket.id, changes, bucket.version
                    )
                except VersionConflictError as e:
                    if self._audit_logger:
                        await self._audit_logger.log_version_conflict(
                            entity_type=e.entity_type,
                            entity_id=e.entity_id,
                            expected_version=e.expected_version,
                            correlation_id=correlation_id,
                        )
                    raise
                applied.append(f"bucket {bucket.id} balance {bucket.current_balance} -> {new_balance}")
                if "state" in changes:
                    capped.append(updated)
            await self._transactions.append_transaction(row)
        except Exception as e:
            if not applied:
                raise
            raise await self._partial(user_id, operation, e, applied, correlation_id) from e

        if self._audit_logger:
            for bucket in capped:
                await self._audit_logger.log_bucket_event(
                    event_type=AuditEventType.BUCKET_CAPPED,
                    user_id=bucket.user_id,
                    bucket_id=bucket.id,
                    name=bucket.name,
                    details={"balance": str(bucket.current_balance)},
                    correlation_id=correlation_id,
                )

    async def _require_bucket(self, bucket_id: UUID) -> Bucket:
        bucket = await self._buckets.get_bucket(bucket_id)
        if bucket is None:
            raise NotFoundError(f"Bucket not found: {bucket_id}")
        return bucket

    async def _validated_amount(
        self,
        user_id: str,
        operation: str,
        amount: Decimal,
        correlation_id: UUID,
    ) -> Decimal:
        try:
            return self._validator.require_positive_amount(amount)
        except ValidationError as e:
            if self._audit_logger:
                await self._audit_logger.log_validation_failed(
                    user_id=user_id,
                    operation=operation,
                    error_message=str(e),
                    correlation_id=correlation_id,
                )
            raise

    async def _partial(
        self,
        user_id: str,
        operation: str,
        error: Exception,
        applied: list[str],
        correlation_id: UUID,
    ) -> PartialApplicationError:
        if self._audit_logger:
            await self._audit_logger.log_partial_application(
                user_id=user_id,
                operation=operation,
                error_message=str(error),
                applied=applied,
                correlation_id=correlation_id,
            )
        return PartialApplicationError(f"{operation} stopped partway: {error}", applied)

    async def _log_recorded(self, tx: Transaction, correlation_id: UUID) -> None:
        if self._audit_logger:
            await self._audit_logger.log_transaction_recorded(
                user_id=tx.user_id,
                transaction_id=tx.id,
                transaction_type=tx.type.value,
                amount=str(tx.amount),
                correlation_id=correlation_id,
            )


class BucketFlow:
    """
    Bucket management with an explicit funding state.

    State transitions:
    - ACCUMULATING → CAPPED when the balance reaches a positive target
      (percentage parked in `paused_percentage`, live percentage 0)
    - CAPPED → ACCUMULATING only on an explicit edit that moves the target
      above the balance (or removes it); the parked percentage comes back
      if the distribution sum still fits, otherwise the bucket reopens at 0
    """

    def __init__(
        self,
        bucket_storage: BucketStorageInterface,
        validator: Optional[LedgerValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._buckets = bucket_storage
        self._validator = validator or LedgerValidator()
        self._audit_logger = audit_logger

    async def create_bucket(
        self,
        user_id: str,
        name: str,
        distribution_percentage: Decimal = ZERO,
        target_amount: Optional[Decimal] = None,
        initial_balance: Decimal = ZERO,
        correlation_id: Optional[UUID] = None,
    ) -> Bucket:
        """
        Raises:
            DistributionLimitError: Percentages would exceed 100
        """
        correlation_id = correlation_id or create_correlation_id()
        existing = await self._buckets.list_buckets(user_id)
        self._validator.check_distribution_sum(existing, distribution_percentage)
        self._validator.require_non_negative_amount(initial_balance, "initial_balance")

        bucket = Bucket(
            user_id=user_id,
            name=name,
            distribution_percentage=distribution_percentage,
            target_amount=target_amount,
            current_balance=initial_balance,
        )
        if bucket.target_reached:
            bucket = bucket.model_copy(update=capping_changes(bucket))

        bucket = await self._buckets.insert_bucket(bucket)
        await self._log(AuditEventType.BUCKET_CREATED, bucket, correlation_id, {
            "distribution_percentage": str(bucket.distribution_percentage),
            "state": bucket.state.value,
        })
        return bucket

    @retry(
        retry=retry_if_exception_type(VersionConflictError),
        stop=stop_after_attempt(3),
        wait=wait_random(0, 0.05),
        reraise=True,
    )
    async def update_bucket(
        self,
        bucket_id: UUID,
        name: Optional[str] = None,
        distribution_percentage: Optional[Decimal] = None,
        target_amount: Optional[Decimal] = None,
        clear_target: bool = False,
        current_balance: Optional[Decimal] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Bucket:
        """
        Edit a bucket and recompute its funding state.

        Only arguments that are not None are changed; `clear_target`
        removes the target.
        """
        correlation_id = correlation_id or create_correlation_id()
        bucket = await self._buckets.get_bucket(bucket_id)
        if bucket is None:
            raise NotFoundError(f"Bucket not found: {bucket_id}")
        others = [
            b for b in await self._buckets.list_buckets(bucket.user_id) if b.id != bucket.id
        ]

        changes: dict = {}
        if name is not None:
            changes["name"] = name
        if clear_target:
            changes["target_amount"] = None
        elif target_amount is not None:
            changes["target_amount"] = target_amount
        if current_balance is not None:
            changes["current_balance"] = current_balance
        if distribution_percentage is not None:
            self._validator.check_distribution_sum(others, distribution_percentage)
            changes["distribution_percentage"] = distribution_percentage

        candidate = bucket.model_copy(update=changes)
        transition = None
        if candidate.target_reached:
            if candidate.distribution_percentage > ZERO or bucket.state != BucketState.CAPPED:
                changes.update(capping_changes(candidate))
                transition = AuditEventType.BUCKET_CAPPED
        elif bucket.state == BucketState.CAPPED:
            restored = candidate.distribution_percentage
            if restored <= ZERO:
                restored = bucket.paused_percentage or ZERO
            if not self._validator.distribution_fits(others, restored):
                restored = ZERO
            changes.update({
                "state": BucketState.ACCUMULATING,
                "distribution_percentage": restored,
                "paused_percentage": None,
            })
            transition = AuditEventType.BUCKET_REOPENED

        if not changes:
            return bucket

        try:
            updated = await self._buckets.update_bucket(bucket.id, changes, bucket.version)
        except VersionConflictError as e:
            if self._audit_logger:
                await self._audit_logger.log_version_conflict(
                    entity_type=e.entity_type,
                    entity_id=e.entity_id,
                    expected_version=e.expected_version,
                    correlation_id=correlation_id,
                )
            raise

        await self._log(AuditEventType.BUCKET_UPDATED, updated, correlation_id, {
            "fields": sorted(k for k in changes if k not in ("state", "paused_percentage")),
        })
        if transition:
            await self._log(transition, updated, correlation_id, {
                "distribution_percentage": str(updated.distribution_percentage),
            })
        return updated

    async def delete_bucket(
        self,
        bucket_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> bool:
        """
        Delete a bucket. Its balance falls back into unassigned liquidity;
        ledger rows that name it are kept as history.
        """
        correlation_id = correlation_id or create_correlation_id()
        bucket = await self._buckets.get_bucket(bucket_id)
        if bucket is None:
            return False
        deleted = await self._buckets.delete_bucket(bucket_id)
        if deleted:
            await self._log(AuditEventType.BUCKET_DELETED, bucket, correlation_id, {
                "released_balance": str(bucket.current_balance),
            })
        return deleted

    async def _log(
        self,
        event_type: AuditEventType,
        bucket: Bucket,
        correlation_id: UUID,
        details: dict,
    ) -> None:
        if self._audit_logger:
            await self._audit_logger.log_bucket_event(
                event_type=event_type,
                user_id=bucket.user_id,
                bucket_id=bucket.id,
                name=bucket.name,
                details=details,
                correlation_id=correlation_id,
            )


class AppComponents(NamedTuple):
    transactions: TransactionFlow
    buckets: BucketFlow
    portfolio: PortfolioManager
    balances: BalanceService
    queries: LedgerQueryExecutor
    audit_logger: AuditLogger


def create_app_components(
    db: Optional[InMemoryDatabase] = None,
    market_provider: Optional[MarketDataProvider] = None,
    persist_audit: bool = True,
) -> AppComponents:
    """
    Factory function to create all application components.

    Args:
        db: Shared in-memory database; a fresh one when None
        market_provider: Price source for automated investments.
                         None values automated positions provisionally.
        persist_audit: Store audit events in `db` as well as logging them

    Returns:
        AppComponents wired to the same stores
    """
    db = db or InMemoryDatabase()

    transaction_storage = InMemoryTransactionStorage(db)
    bucket_storage = InMemoryBucketStorage(db)
    investment_storage = InMemoryInvestmentStorage(db)
    category_storage = InMemoryCategoryStorage(db)
    profile_storage = InMemoryProfileStorage(db)

    if persist_audit:
        audit_logger = AuditLogger(InMemoryAuditStorage(db))
    else:
        audit_logger = AuditLogger()  # Local-only logging

    validator = LedgerValidator()
    balances = BalanceService(
        transaction_storage,
        bucket_storage,
        investment_storage,
        category_storage,
    )
    portfolio = PortfolioManager(
        transaction_storage=transaction_storage,
        investment_storage=investment_storage,
        category_storage=category_storage,
        profile_storage=profile_storage,
        balance_service=balances,
        market_provider=market_provider,
        validator=validator,
        audit_logger=audit_logger,
    )
    transactions = TransactionFlow(
        transaction_storage=transaction_storage,
        bucket_storage=bucket_storage,
        portfolio=portfolio,
        validator=validator,
        audit_logger=audit_logger,
    )
    buckets = BucketFlow(
        bucket_storage=bucket_storage,
        validator=validator,
        audit_logger=audit_logger,
    )
    queries = LedgerQueryExecutor(transaction_storage, category_storage)

    return AppComponents(
        transactions=transactions,
        buckets=buckets,
        portfolio=portfolio,
        balances=balances,
        queries=queries,
        audit_logger=audit_logger,
    )
