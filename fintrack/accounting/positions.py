"""
Position Accounting Engine

Maintains quantity, cost basis and market value of each investment with
the weighted average cost method (PMC = invested_amount / quantity).

Operations:
1. open_position / add_to_position: buy with a liquidity check
2. declare_position: historical cost-basis entry, no liquidity effect
3. sell: removes cost basis at the current PMC, books realized P&L
4. update_investment: price/metadata edit, no ledger row
5. delete_investment: cascades to every linked ledger row
6. reverse_transaction: best-effort inverse of one linked row
7. lookup_quote / refresh_prices: market valuation

Ledger rows written here (see fintrack.models.ledger for the convention):
- buy:   transfer  -net_invested, asset_quantity +units, no bucket
         expense   -fees in the commission category (only when fees > 0)
- sell:  transfer  +cost_basis_removed, asset_quantity -units
         income/expense realized P&L (only when |P&L| > threshold)
- setup: initial   -cost_basis, asset_quantity +units

Every operation validates and fetches prices first, then writes the
investment with a versioned update, then appends the ledger rows.

KNOWN LIMITATION: reversal recomputes the value at the per-share price
held NOW, not at the price of the original operation. The recomputed
value drifts when the price moved in between.
"""

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional
from uuid import UUID

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random,
)

from fintrack.accounting.balances import BalanceService
from fintrack.audit import AuditLogger
from fintrack.config import get_settings
from fintrack.errors import DuplicateTickerError, PartialApplicationError
from fintrack.models.audit import AuditEventBuilder, AuditEventType
from fintrack.models.ledger import (
    CategoryType,
    Investment,
    InvestmentType,
    Transaction,
    TransactionFilter,
    TransactionOrigin,
    TransactionType,
)
from fintrack.models.money import ZERO, round_currency, round_units
from fintrack.models.results import (
    PriceQuote,
    PriceRefreshResult,
    ReversalResult,
    TradeResult,
)
from fintrack.services.market import (
    MarketDataError,
    MarketDataProvider,
    TransientMarketDataError,
)
from fintrack.services.storage import (
    CategoryStorageInterface,
    DuplicateError,
    InvestmentStorageInterface,
    NotFoundError,
    ProfileStorageInterface,
    TransactionStorageInterface,
    VersionConflictError,
)
from fintrack.validation import LedgerValidator


def cost_basis_for(investment: Investment, units: Decimal) -> Decimal:
    """Cost basis of `units` at the current PMC. Selling everything removes it all."""
    if units >= investment.quantity:
        return investment.invested_amount
    return round_currency(investment.invested_amount * units / investment.quantity)


def value_at_held_price(investment: Investment, new_quantity: Decimal) -> Decimal:
    """Scale current_value to a new quantity at the unchanged per-share price."""
    if investment.quantity <= ZERO:
        return investment.current_value
    return round_currency(investment.current_value / investment.quantity * new_quantity)


class PortfolioManager:
    """
    Buy/sell/setup/edit/delete/reversal of investment positions.

    Market lookups go through the optional provider. Without a provider,
    automated investments are valued provisionally at cost.
    """

    def __init__(
        self,
        transaction_storage: TransactionStorageInterface,
        investment_storage: InvestmentStorageInterface,
        category_storage: CategoryStorageInterface,
        profile_storage: ProfileStorageInterface,
        balance_service: BalanceService,
        market_provider: Optional[MarketDataProvider] = None,
        validator: Optional[LedgerValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._transactions = transaction_storage
        self._investments = investment_storage
        self._categories = category_storage
        self._profiles = profile_storage
        self._balances = balance_service
        self._market = market_provider
        self._validator = validator or LedgerValidator()
        self._audit_logger = audit_logger
        self._settings = get_settings()

    # =========================================================================
    # MARKET DATA
    # =========================================================================

    async def lookup_quote(
        self,
        ticker: str,
        correlation_id: Optional[UUID] = None,
    ) -> PriceQuote:
        """
        Single-ticker lookup. Not throttled.

        Raises:
            TickerNotFoundError: Unknown ticker
            TransientMarketDataError: Provider unavailable
        """
        if self._market is None:
            raise TransientMarketDataError(ticker, "No market data provider configured")
        try:
            return await self._market.fetch_quote(ticker)
        except TransientMarketDataError as e:
            if self._audit_logger:
                await self._audit_logger.log_external_service_error(
                    service="market_data",
                    error_message=str(e),
                    correlation_id=correlation_id,
                )
            raise

    async def _quote_or_none(
        self,
        ticker: str,
        correlation_id: Optional[UUID],
    ) -> Optional[PriceQuote]:
        """Unknown tickers abort the operation; transient failures degrade to None."""
        try:
            return await self.lookup_quote(ticker, correlation_id)
        except TransientMarketDataError:
            return None

    async def refresh_prices(
        self,
        user_id: str,
        now: Optional[datetime] = None,
        correlation_id: Optional[UUID] = None,
    ) -> PriceRefreshResult:
        """
        Revalue every automated investment at market price.

        Rate limited per user; a call inside the cooldown returns a
        throttled result and changes nothing. Individual failures are
        reported in `failed_tickers` instead of failing the batch.
        """
        now = now or datetime.utcnow()
        cooldown = timedelta(minutes=self._settings.market_data.refresh_cooldown_minutes)

        profile = await self._profiles.get_profile(user_id)
        if profile.last_price_refresh and now - profile.last_price_refresh < cooldown:
            elapsed = now - profile.last_price_refresh
            retry_after = (cooldown - elapsed).total_seconds() / 60
            if self._audit_logger:
                await self._audit_logger.log(
                    AuditEventBuilder.price_refresh_throttled(user_id, retry_after)
                )
            return PriceRefreshResult(throttled=True, retry_after_minutes=retry_after)

        investments = await self._investments.list_investments(user_id)
        automated = [
            inv for inv in investments
            if inv.is_automated and inv.ticker and inv.quantity > ZERO
        ]
        if not automated:
            return PriceRefreshResult()

        updated = 0
        failed: list[str] = []
        for investment in automated:
            try:
                quote = await self.lookup_quote(investment.ticker, correlation_id)
                await self._investments.update_investment(
                    investment.id,
                    {"current_value": round_currency(quote.price * investment.quantity)},
                    investment.version,
                )
                updated += 1
            except (MarketDataError, VersionConflictError, NotFoundError):
                failed.append(investment.ticker)

        await self._profiles.set_last_price_refresh(user_id, now)

        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.prices_refreshed(
                user_id=user_id,
                requested=len(automated),
                updated=updated,
                failed=failed,
            ))

        return PriceRefreshResult(
            requested=len(automated),
            updated=updated,
            failed_tickers=failed,
        )

    # =========================================================================
    # BUY
    # =========================================================================

    async def open_position(
        self,
        user_id: str,
        name: Optional[str],
        quantity: Decimal,
        total_paid: Decimal,
        trade_date: date,
        fees: Decimal = ZERO,
        investment_type: InvestmentType = InvestmentType.ETF,
        ticker: Optional[str] = None,
        is_automated: bool = False,
        unit_price: Optional[Decimal] = None,
        description: str = "",
        correlation_id: Optional[UUID] = None,
    ) -> TradeResult:
        """
        Buy into a new position, paid from unassigned liquidity.

        Raises:
            InvalidAmountError: Non-positive quantity or price
            DuplicateTickerError: The ticker is already held
            InsufficientLiquidityError: total_paid exceeds liquidity
            TickerNotFoundError: Automated position with an unknown ticker
        """
        quantity = self._validator.require_positive_quantity(quantity)
        total_paid = self._validator.require_positive_amount(total_paid, "total_paid")
        fees = self._validator.require_non_negative_amount(fees, "fees")
        self._validator.check_ticker_unique(
            await self._investments.list_investments(user_id), ticker
        )
        self._validator.check_liquidity(total_paid, await self._balances.liquidity(user_id))

        net_invested = max(ZERO, round_currency(total_paid - fees))
        investment, provisional = await self._new_investment(
            user_id=user_id,
            name=name,
            investment_type=investment_type,
            ticker=ticker,
            is_automated=is_automated,
            quantity=quantity,
            cost_basis=net_invested,
            unit_price=unit_price,
            correlation_id=correlation_id,
        )
        investment = await self._insert_investment(investment)

        transactions = await self._append_rows(
            user_id,
            "open_position",
            [f"investment {investment.id} inserted"],
            self._buy_rows(investment, quantity, net_invested, fees, trade_date, description),
            correlation_id,
        )

        await self._log_investment(
            AuditEventType.INVESTMENT_BOUGHT, investment,
            {"quantity": str(quantity), "net_invested": str(net_invested), "fees": str(fees)},
            correlation_id,
        )
        return TradeResult(
            investment=investment,
            transactions=transactions,
            provisional_value=provisional,
        )

    @retry(
        retry=retry_if_exception_type(VersionConflictError),
        stop=stop_after_attempt(3),
        wait=wait_random(0, 0.05),
        reraise=True,
    )
    async def add_to_position(
        self,
        investment_id: UUID,
        quantity: Decimal,
        total_paid: Decimal,
        trade_date: date,
        fees: Decimal = ZERO,
        description: str = "",
        correlation_id: Optional[UUID] = None,
    ) -> TradeResult:
        """
        Buy more of an existing position.

        The value follows the market price for automated investments,
        otherwise the held per-share price scales to the new quantity.
        """
        investment = await self._require_investment(investment_id)
        quantity = self._validator.require_positive_quantity(quantity)
        total_paid = self._validator.require_positive_amount(total_paid, "total_paid")
        fees = self._validator.require_non_negative_amount(fees, "fees")
        self._validator.check_liquidity(
            total_paid, await self._balances.liquidity(investment.user_id)
        )

        net_invested = max(ZERO, round_currency(total_paid - fees))
        new_quantity = round_units(investment.quantity + quantity)
        new_value, provisional = await self._value_after_increase(
            investment, new_quantity, net_invested, correlation_id
        )

        updated = await self._cas_update(
            investment,
            {
                "quantity": new_quantity,
                "invested_amount": round_currency(investment.invested_amount + net_invested),
                "current_value": new_value,
            },
            correlation_id,
        )

        transactions = await self._append_rows(
            investment.user_id,
            "add_to_position",
            [f"investment {investment.id} updated"],
            self._buy_rows(updated, quantity, net_invested, fees, trade_date, description),
            correlation_id,
        )

        await self._log_investment(
            AuditEventType.INVESTMENT_BOUGHT, updated,
            {"quantity": str(quantity), "net_invested": str(net_invested), "fees": str(fees)},
            correlation_id,
        )
        return TradeResult(
            investment=updated,
            transactions=transactions,
            provisional_value=provisional,
        )

    # =========================================================================
    # HISTORICAL SETUP
    # =========================================================================

    async def declare_position(
        self,
        user_id: str,
        quantity: Decimal,
        average_cost: Decimal,
        trade_date: date,
        investment_id: Optional[UUID] = None,
        name: Optional[str] = None,
        investment_type: InvestmentType = InvestmentType.ETF,
        ticker: Optional[str] = None,
        is_automated: bool = False,
        unit_price: Optional[Decimal] = None,
        description: str = "",
        correlation_id: Optional[UUID] = None,
    ) -> TradeResult:
        """
        Record units bought before tracking started.

        invested_amount grows by average_cost * quantity. No liquidity
        check and no transfer: the money left liquidity before the ledger
        existed.
        """
        quantity = self._validator.require_positive_quantity(quantity)
        average_cost = self._validator.require_non_negative_amount(average_cost, "average_cost")
        cost_basis = round_currency(average_cost * quantity)

        if investment_id is not None:
            return await self._declare_on_existing(
                investment_id, quantity, cost_basis, trade_date, description, correlation_id
            )

        self._validator.check_ticker_unique(
            await self._investments.list_investments(user_id), ticker
        )
        investment, provisional = await self._new_investment(
            user_id=user_id,
            name=name,
            investment_type=investment_type,
            ticker=ticker,
            is_automated=is_automated,
            quantity=quantity,
            cost_basis=cost_basis,
            unit_price=unit_price,
            correlation_id=correlation_id,
        )
        investment = await self._insert_investment(investment)

        transactions = await self._append_rows(
            user_id,
            "declare_position",
            [f"investment {investment.id} inserted"],
            [self._initial_row(investment, quantity, cost_basis, trade_date, description)],
            correlation_id,
        )

        await self._log_investment(
            AuditEventType.POSITION_DECLARED, investment,
            {"quantity": str(quantity), "cost_basis": str(cost_basis)},
            correlation_id,
        )
        return TradeResult(
            investment=investment,
            transactions=transactions,
            provisional_value=provisional,
        )

    @retry(
        retry=retry_if_exception_type(VersionConflictError),
        stop=stop_after_attempt(3),
        wait=wait_random(0, 0.05),
        reraise=True,
    )
    async def _declare_on_existing(
        self,
        investment_id: UUID,
        quantity: Decimal,
        cost_basis: Decimal,
        trade_date: date,
        description: str,
        correlation_id: Optional[UUID],
    ) -> TradeResult:
        investment = await self._require_investment(investment_id)
        new_quantity = round_units(investment.quantity + quantity)
        new_value, provisional = await self._value_after_increase(
            investment, new_quantity, cost_basis, correlation_id
        )

        updated = await self._cas_update(
            investment,
            {
                "quantity": new_quantity,
                "invested_amount": round_currency(investment.invested_amount + cost_basis),
                "current_value": new_value,
            },
            correlation_id,
        )
        transactions = await self._append_rows(
            investment.user_id,
            "declare_position",
            [f"investment {investment.id} updated"],
            [self._initial_row(updated, quantity, cost_basis, trade_date, description)],
            correlation_id,
        )

        await self._log_investment(
            AuditEventType.POSITION_DECLARED, updated,
            {"quantity": str(quantity), "cost_basis": str(cost_basis)},
            correlation_id,
        )
        return TradeResult(
            investment=updated,
            transactions=transactions,
            provisional_value=provisional,
        )

    # =========================================================================
    # SELL
    # =========================================================================

    @retry(
        retry=retry_if_exception_type(VersionConflictError),
        stop=stop_after_attempt(3),
        wait=wait_random(0, 0.05),
        reraise=True,
    )
    async def sell(
        self,
        investment_id: UUID,
        quantity: Decimal,
        total_received: Decimal,
        trade_date: date,
        fees: Decimal = ZERO,
        description: str = "",
        correlation_id: Optional[UUID] = None,
    ) -> TradeResult:
        """
        Sell units of a position.

        cost_basis_removed = PMC * units
        realized P&L = (total_received - fees) - cost_basis_removed

        The cost basis returns to liquidity as a transfer. The P&L is booked
        as ordinary income or expense linked to the investment.

        Raises:
            InsufficientQuantityError: More units than held
        """
        investment = await self._require_investment(investment_id)
        quantity = self._validator.require_positive_quantity(quantity)
        total_received = self._validator.require_non_negative_amount(
            total_received, "total_received"
        )
        fees = self._validator.require_non_negative_amount(fees, "fees")
        self._validator.check_quantity(investment, quantity)

        cost_removed = cost_basis_for(investment, quantity)
        net_proceeds = round_currency(total_received - fees)
        realized_pl = round_currency(net_proceeds - cost_removed)
        new_quantity = round_units(investment.quantity - quantity)

        updated = await self._cas_update(
            investment,
            {
                "quantity": new_quantity,
                "invested_amount": max(ZERO, round_currency(investment.invested_amount - cost_removed)),
                "current_value": value_at_held_price(investment, new_quantity),
            },
            correlation_id,
        )

        label = description or f"Sale of {updated.name or updated.ticker or 'investment'}"
        transfer = Transaction(
            user_id=updated.user_id,
            amount=cost_removed,
            type=TransactionType.TRANSFER,
            date=trade_date,
            investment_id=updated.id,
            asset_quantity=-quantity,
            description=label,
            origin=TransactionOrigin.TRADE,
        )
        rows = [transfer]
        if abs(realized_pl) > self._settings.ledger.realized_pl_threshold:
            rows.append(Transaction(
                user_id=updated.user_id,
                amount=realized_pl,
                type=TransactionType.INCOME if realized_pl > ZERO else TransactionType.EXPENSE,
                date=trade_date,
                investment_id=updated.id,
                description=f"Realized {'gain' if realized_pl > ZERO else 'loss'}: {label}",
                origin=TransactionOrigin.REALIZED_PNL,
                source_transaction_id=transfer.id,
            ))

        transactions = await self._append_rows(
            updated.user_id,
            "sell",
            [f"investment {investment.id} updated"],
            rows,
            correlation_id,
        )

        await self._log_investment(
            AuditEventType.INVESTMENT_SOLD, updated,
            {
                "quantity": str(quantity),
                "cost_basis_removed": str(cost_removed),
                "realized_pl": str(realized_pl),
            },
            correlation_id,
        )
        return TradeResult(
            investment=updated,
            transactions=transactions,
            cost_basis_removed=cost_removed,
            realized_pl=realized_pl,
        )

    # =========================================================================
    # EDIT / DELETE
    # =========================================================================

    @retry(
        retry=retry_if_exception_type(VersionConflictError),
        stop=stop_after_attempt(3),
        wait=wait_random(0, 0.05),
        reraise=True,
    )
    async def update_investment(
        self,
        investment_id: UUID,
        name: Optional[str] = None,
        investment_type: Optional[InvestmentType] = None,
        ticker: Optional[str] = None,
        is_automated: Optional[bool] = None,
        current_value: Optional[Decimal] = None,
        correlation_id: Optional[UUID] = None,
    ) -> Investment:
        """
        Edit metadata or set the value by hand. Writes no ledger row.

        Only the arguments that are not None are changed.
        """
        investment = await self._require_investment(investment_id)
        changes: dict = {}
        if name is not None:
            changes["name"] = name
        if investment_type is not None:
            changes["type"] = investment_type
        if ticker is not None:
            self._validator.check_ticker_unique(
                await self._investments.list_investments(investment.user_id),
                ticker,
                exclude_investment_id=investment.id,
            )
            changes["ticker"] = ticker
        if is_automated is not None:
            changes["is_automated"] = is_automated
        if current_value is not None:
            changes["current_value"] = self._validator.require_non_negative_amount(
                current_value, "current_value"
            )
        if not changes:
            return investment

        updated = await self._cas_update(investment, changes, correlation_id)
        await self._log_investment(
            AuditEventType.INVESTMENT_UPDATED, updated,
            {"fields": sorted(changes)},
            correlation_id,
        )
        return updated

    async def delete_investment(
        self,
        investment_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> list[UUID]:
        """
        Delete a position and every ledger row linked to it.

        Returns the ids of the deleted rows.
        """
        investment = await self._require_investment(investment_id)
        linked = await self._transactions.query_transactions(
            investment.user_id,
            TransactionFilter(investment_id=investment.id),
        )

        applied: list[str] = []
        deleted: list[UUID] = []
        try:
            for tx in linked:
                if await self._transactions.delete_transaction(tx.id):
                    deleted.append(tx.id)
                    applied.append(f"transaction {tx.id} deleted")
            await self._investments.delete_investment(investment.id)
        except Exception as e:
            if not applied:
                raise
            raise await self._partial(
                investment.user_id, "delete_investment", e, applied, correlation_id
            ) from e

        await self._log_investment(
            AuditEventType.INVESTMENT_DELETED, investment,
            {"cascaded": len(deleted)},
            correlation_id,
        )
        return deleted

    # =========================================================================
    # REVERSAL
    # =========================================================================

    @retry(
        retry=retry_if_exception_type(VersionConflictError),
        stop=stop_after_attempt(3),
        wait=wait_random(0, 0.05),
        reraise=True,
    )
    async def reverse_transaction(
        self,
        transaction_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> ReversalResult:
        """
        Delete an investment-linked row and undo its effect on the position.

        quantity        -= asset_quantity
        invested_amount += amount          (transfers only)
        current_value    = held per-share price * new quantity

        Rows written as side effects of this one (trade fee, realized P&L)
        are deleted with it. Best effort, see the module docstring.
        """
        tx = await self._transactions.get_transaction(transaction_id)
        if tx is None:
            raise NotFoundError(f"Transaction not found: {transaction_id}")

        children = await self._transactions.query_transactions(
            tx.user_id,
            TransactionFilter(source_transaction_id=tx.id),
        )

        investment = None
        if tx.investment_id is not None:
            investment = await self._investments.get_investment(tx.investment_id)

        applied: list[str] = []
        if investment is not None:
            changes = self._reversal_changes(investment, tx)
            investment = await self._cas_update(investment, changes, correlation_id)
            applied.append(f"investment {investment.id} restored")

        deleted: list[UUID] = []
        try:
            for row in children + [tx]:
                if await self._transactions.delete_transaction(row.id):
                    deleted.append(row.id)
                    applied.append(f"transaction {row.id} deleted")
        except Exception as e:
            if not applied:
                raise
            raise await self._partial(
                tx.user_id, "reverse_transaction", e, applied, correlation_id
            ) from e

        if self._audit_logger and investment is not None:
            await self._audit_logger.log(AuditEventBuilder.transaction_reversed(
                user_id=tx.user_id,
                transaction_id=tx.id,
                investment_id=investment.id,
                quantity_delta=str(-(tx.asset_quantity or ZERO)),
                invested_delta=str(tx.amount if self._moves_cost_basis(tx) else ZERO),
                correlation_id=correlation_id,
            ))

        return ReversalResult(deleted_transaction_ids=deleted, investment=investment)

    @staticmethod
    def _moves_cost_basis(tx: Transaction) -> bool:
        # Initial rows keep their cost basis on reversal; only units are removed
        return tx.type == TransactionType.TRANSFER

    def _reversal_changes(self, investment: Investment, tx: Transaction) -> dict:
        new_quantity = max(ZERO, round_units(investment.quantity - (tx.asset_quantity or ZERO)))
        invested = investment.invested_amount
        if self._moves_cost_basis(tx):
            invested = max(ZERO, round_currency(invested + tx.amount))

        if investment.quantity > ZERO:
            value = value_at_held_price(investment, new_quantity)
        elif new_quantity == ZERO:
            value = ZERO
        else:
            # Reopening a closed position: no held price, fall back to cost
            value = invested

        return {
            "quantity": new_quantity,
            "invested_amount": invested,
            "current_value": value,
        }

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _require_investment(self, investment_id: UUID) -> Investment:
        investment = await self._investments.get_investment(investment_id)
        if investment is None:
            raise NotFoundError(f"Investment not found: {investment_id}")
        return investment

    async def _insert_investment(self, investment: Investment) -> Investment:
        try:
            return await self._investments.insert_investment(investment)
        except DuplicateError:
            raise DuplicateTickerError(investment.ticker or "")

    async def _cas_update(
        self,
        investment: Investment,
        changes: dict,
        correlation_id: Optional[UUID],
    ) -> Investment:
        try:
            return await self._investments.update_investment(
                investment.id, changes, investment.version
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

    async def _new_investment(
        self,
        user_id: str,
        name: Optional[str],
        investment_type: InvestmentType,
        ticker: Optional[str],
        is_automated: bool,
        quantity: Decimal,
        cost_basis: Decimal,
        unit_price: Optional[Decimal],
        correlation_id: Optional[UUID],
    ) -> tuple[Investment, bool]:
        """Build an unsaved position and value it. Returns (investment, provisional)."""
        quote = None
        if is_automated and ticker:
            quote = await self._quote_or_none(ticker, correlation_id)

        if quote is not None:
            current_value = round_currency(quote.price * quantity)
            name = name or quote.display_name
        elif unit_price is not None:
            current_value = round_currency(unit_price * quantity)
        else:
            current_value = cost_basis

        investment = Investment(
            user_id=user_id,
            name=name,
            type=investment_type,
            ticker=ticker,
            is_automated=is_automated,
            quantity=quantity,
            invested_amount=cost_basis,
            current_value=current_value,
        )
        return investment, is_automated and quote is None

    async def _value_after_increase(
        self,
        investment: Investment,
        new_quantity: Decimal,
        added_cost: Decimal,
        correlation_id: Optional[UUID],
    ) -> tuple[Decimal, bool]:
        if investment.is_automated and investment.ticker:
            quote = await self._quote_or_none(investment.ticker, correlation_id)
            if quote is not None:
                return round_currency(quote.price * new_quantity), False
            provisional = True
        else:
            provisional = False

        if investment.quantity > ZERO:
            return value_at_held_price(investment, new_quantity), provisional
        return round_currency(investment.current_value + added_cost), provisional

    def _buy_rows(
        self,
        investment: Investment,
        quantity: Decimal,
        net_invested: Decimal,
        fees: Decimal,
        trade_date: date,
        description: str,
    ) -> list[Transaction]:
        label = description or f"Purchase of {investment.name or investment.ticker or 'investment'}"
        transfer = Transaction(
            user_id=investment.user_id,
            amount=-net_invested,
            type=TransactionType.TRANSFER,
            date=trade_date,
            investment_id=investment.id,
            asset_quantity=quantity,
            description=label,
            origin=TransactionOrigin.TRADE,
        )
        rows = [transfer]
        if fees > ZERO:
            rows.append(Transaction(
                user_id=investment.user_id,
                amount=-fees,
                type=TransactionType.EXPENSE,
                date=trade_date,
                investment_id=investment.id,
                description=f"Fees: {label}",
                origin=TransactionOrigin.COMMISSION,
                source_transaction_id=transfer.id,
            ))
        return rows

    def _initial_row(
        self,
        investment: Investment,
        quantity: Decimal,
        cost_basis: Decimal,
        trade_date: date,
        description: str,
    ) -> Transaction:
        return Transaction(
            user_id=investment.user_id,
            amount=-cost_basis,
            type=TransactionType.INITIAL,
            date=trade_date,
            investment_id=investment.id,
            asset_quantity=quantity,
            description=description or f"Opening position: {investment.name or investment.ticker or 'investment'}",
            origin=TransactionOrigin.HISTORICAL,
        )

    async def _append_rows(
        self,
        user_id: str,
        operation: str,
        applied: list[str],
        rows: list[Transaction],
        correlation_id: Optional[UUID],
    ) -> list[Transaction]:
        """Append rows after the aggregate write; any failure is partial."""
        written = []
        try:
            for row in rows:
                if row.origin == TransactionOrigin.COMMISSION:
                    category = await self._categories.get_or_create_category(
                        user_id,
                        self._settings.ledger.commission_category_name,
                        CategoryType.EXPENSE,
                    )
                    row = row.model_copy(update={"category_id": category.id})
                await self._transactions.append_transaction(row)
                written.append(row)
                applied.append(f"transaction {row.id} appended")
        except Exception as e:
            raise await self._partial(user_id, operation, e, applied, correlation_id) from e

        if self._audit_logger:
            for row in written:
                await self._audit_logger.log_transaction_recorded(
                    user_id=user_id,
                    transaction_id=row.id,
                    transaction_type=row.type.value,
                    amount=str(row.amount),
                    correlation_id=correlation_id,
                )
        return written

    async def _partial(
        self,
        user_id: str,
        operation: str,
        error: Exception,
        applied: list[str],
        correlation_id: Optional[UUID],
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

    async def _log_investment(
        self,
        event_type: AuditEventType,
        investment: Investment,
        details: dict,
        correlation_id: Optional[UUID],
    ) -> None:
        if self._audit_logger:
            await self._audit_logger.log_investment_event(
                event_type=event_type,
                user_id=investment.user_id,
                investment_id=investment.id,
                details=details,
                correlation_id=correlation_id,
            )
