"""
Waterfall Allocation Engine

Distributes an income across the buckets that have a distribution
percentage, spilling whatever a capped bucket cannot take into a shared
pool that is handed to the buckets still accumulating.

The algorithm is a fixed point over passes:
1. Every bucket with p > 0 gets floor(A * p / 100) and is eligible.
2. An eligible bucket with a target whose share exceeds the room left
   (target - balance) is clamped to that room. The excess goes to the
   pool and the bucket leaves eligibility.
3. If the pool is above tolerance and eligible buckets remain, each of
   them receives floor(pool * p / 100) and the pool is emptied.
4. Repeat until a pass clamps nothing and redistributes nothing.

Step 3 weights by the RAW percentage, not renormalized against the
remaining buckets. When their percentages sum below 100, part of the pool
is never redistributed and stays as unassigned liquidity. Shares are
rounded down, so the total allocated never exceeds the income.

Applying a plan touches one bucket at a time: versioned balance update
first, then the transfer row. There is no rollback. A failure after the
first write surfaces as PartialApplicationError.
"""

from decimal import Decimal
from typing import Iterable, Optional
from uuid import UUID

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random,
)

from fintrack.audit import AuditLogger
from fintrack.config import get_settings
from fintrack.errors import InvalidAmountError, PartialApplicationError
from fintrack.models.audit import AuditEventBuilder, AuditEventType
from fintrack.models.ledger import (
    Bucket,
    BucketState,
    Transaction,
    TransactionOrigin,
    TransactionType,
)
from fintrack.models.money import HUNDRED, ZERO, floor_currency, round_currency
from fintrack.models.results import (
    AllocationResult,
    BucketAllocation,
    PlannedAllocation,
    WaterfallPlan,
)
from fintrack.services.storage import (
    BucketStorageInterface,
    NotFoundError,
    TransactionStorageInterface,
    VersionConflictError,
)


def capping_changes(bucket: Bucket) -> dict:
    """
    Changes that move a bucket to CAPPED.

    The live percentage is parked in `paused_percentage` so a later target
    edit can give it back.
    """
    paused = bucket.distribution_percentage
    if paused <= ZERO and bucket.paused_percentage is not None:
        paused = bucket.paused_percentage
    return {
        "state": BucketState.CAPPED,
        "paused_percentage": paused,
        "distribution_percentage": ZERO,
    }


def plan_waterfall(
    amount: Decimal,
    buckets: Iterable[Bucket],
    pool_tolerance: Decimal = Decimal("0.01"),
) -> WaterfallPlan:
    """
    Compute the per-bucket shares of an income. Pure, no writes.

    Args:
        amount: Income amount, must be positive
        buckets: The user's buckets; those with a 0 percentage are skipped
        pool_tolerance: Excess pools at or below this are not redistributed
    """
    amount = round_currency(amount)
    if amount <= ZERO:
        raise InvalidAmountError("Income amount must be greater than zero")

    participants = [b for b in buckets if b.distribution_percentage > ZERO]
    alloc: dict[UUID, Decimal] = {
        b.id: floor_currency(amount * b.distribution_percentage / HUNDRED)
        for b in participants
    }
    eligible = {b.id for b in participants}
    pool = ZERO
    passes = 0

    while True:
        passes += 1
        clamped = False
        for bucket in participants:
            if bucket.id not in eligible or not bucket.has_target:
                continue
            space = max(ZERO, bucket.target_amount - bucket.current_balance)
            if alloc[bucket.id] > space:
                pool += alloc[bucket.id] - space
                alloc[bucket.id] = space
                eligible.discard(bucket.id)
                clamped = True

        redistributed = False
        if pool > pool_tolerance and eligible:
            for bucket in participants:
                if bucket.id in eligible:
                    alloc[bucket.id] += floor_currency(
                        pool * bucket.distribution_percentage / HUNDRED
                    )
            pool = ZERO
            redistributed = True

        if not clamped and not redistributed:
            break

    # Percentages may overshoot 100 by the configured tolerance
    excess = sum(alloc.values(), ZERO) - amount
    if excess > ZERO:
        largest = max(alloc, key=lambda bucket_id: alloc[bucket_id])
        alloc[largest] = max(ZERO, alloc[largest] - excess)

    allocations = []
    for bucket in participants:
        share = alloc[bucket.id]
        if share <= ZERO:
            continue
        allocations.append(PlannedAllocation(
            bucket_id=bucket.id,
            amount=share,
            reached_target=(
                bucket.has_target
                and bucket.current_balance + share >= bucket.target_amount
            ),
        ))

    return WaterfallPlan(income_amount=amount, allocations=allocations, passes=passes)


class IncomeDistributor:
    """
    Applies waterfall plans to the stores.

    Version conflicts on the first bucket write are retried from a fresh
    read. Once anything was written, errors are no longer retried.
    """

    def __init__(
        self,
        transaction_storage: TransactionStorageInterface,
        bucket_storage: BucketStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._transactions = transaction_storage
        self._buckets = bucket_storage
        self._audit_logger = audit_logger
        self._settings = get_settings().ledger

    async def distribute(
        self,
        income: Transaction,
        correlation_id: Optional[UUID] = None,
    ) -> AllocationResult:
        """
        Distribute a recorded income across the user's buckets.

        Args:
            income: The income row, already appended to the ledger
            correlation_id: Groups the audit events of this user action

        Raises:
            VersionConflictError: Buckets kept changing under us (3 attempts)
            PartialApplicationError: Failed after some buckets were funded
        """
        try:
            return await self._distribute_with_retry(income, correlation_id)
        except VersionConflictError as e:
            if self._audit_logger:
                await self._audit_logger.log_version_conflict(
                    entity_type=e.entity_type,
                    entity_id=e.entity_id,
                    expected_version=e.expected_version,
                    correlation_id=correlation_id,
                )
            raise

    @retry(
        retry=retry_if_exception_type(VersionConflictError),
        stop=stop_after_attempt(3),
        wait=wait_random(0, 0.05),
        reraise=True,
    )
    async def _distribute_with_retry(
        self,
        income: Transaction,
        correlation_id: Optional[UUID],
    ) -> AllocationResult:
        buckets = await self._buckets.list_buckets(income.user_id)
        plan = plan_waterfall(
            abs(income.amount),
            buckets,
            self._settings.waterfall_pool_tolerance,
        )
        by_id = {b.id: b for b in buckets}

        applied: list[str] = []
        allocations: list[BucketAllocation] = []
        try:
            for planned in plan.allocations:
                bucket = by_id[planned.bucket_id]
                allocation = await self._apply_allocation(
                    income, bucket, planned, applied
                )
                allocations.append(allocation)
        except Exception as e:
            if not applied:
                raise
            if self._audit_logger:
                await self._audit_logger.log_partial_application(
                    user_id=income.user_id,
                    operation="income_distribution",
                    error_message=str(e),
                    applied=applied,
                    correlation_id=correlation_id,
                )
            raise PartialApplicationError(
                f"Distribution of income {income.id} stopped partway: {e}",
                applied,
            ) from e

        result = AllocationResult(
            income_transaction_id=income.id,
            income_amount=plan.income_amount,
            allocations=allocations,
        )

        if self._audit_logger:
            for allocation in allocations:
                if allocation.capped:
                    await self._audit_logger.log_bucket_event(
                        event_type=AuditEventType.BUCKET_CAPPED,
                        user_id=income.user_id,
                        bucket_id=allocation.bucket_id,
                        name=allocation.bucket_name,
                        details={"balance": str(allocation.new_balance)},
                        correlation_id=correlation_id,
                    )
            await self._audit_logger.log(AuditEventBuilder.income_distributed(
                user_id=income.user_id,
                income_transaction_id=income.id,
                total_allocated=str(result.total_allocated),
                residual=str(result.residual),
                bucket_count=len(allocations),
                correlation_id=correlation_id,
            ))

        return result

    async def _apply_allocation(
        self,
        income: Transaction,
        bucket: Bucket,
        planned: PlannedAllocation,
        applied: list[str],
    ) -> BucketAllocation:
        new_balance = round_currency(bucket.current_balance + planned.amount)
        changes: dict = {"current_balance": new_balance}
        if planned.reached_target:
            changes.update(capping_changes(bucket))

        try:
            updated = await self._buckets.update_bucket(bucket.id, changes, bucket.version)
        except NotFoundError:
            raise NotFoundError(f"Bucket deleted during distribution: {bucket.name}")
        applied.append(f"bucket {bucket.id} balance {bucket.current_balance} -> {new_balance}")

        transfer = Transaction(
            user_id=income.user_id,
            amount=-planned.amount,
            type=TransactionType.TRANSFER,
            date=income.date,
            bucket_id=bucket.id,
            description=f"{self._settings.automatic_distribution_label}: {bucket.name}",
            origin=TransactionOrigin.AUTO_DISTRIBUTION,
            source_transaction_id=income.id,
        )
        await self._transactions.append_transaction(transfer)
        applied.append(f"transaction {transfer.id}")

        return BucketAllocation(
            bucket_id=bucket.id,
            bucket_name=bucket.name,
            amount=planned.amount,
            new_balance=updated.current_balance,
            capped=planned.reached_target,
            transaction_id=transfer.id,
        )
