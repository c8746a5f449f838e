"""
Store-backed capital flow for the trading loop.

Every position change is written to the store first (one transaction) and only
then applied to the portfolio ledger, so a store failure leaves the ledger
untouched.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..core.errors import StoreUnavailable
from ..core.logging_utils import LoggerMixin
from ..core.money import D, format_usd, round_usd
from ..epoch.run_epoch import RunEpochManager
from ..state.store import StateStore
from .ledger import LedgerPosition, PortfolioLedger


@dataclass
class ClosedPosition:
    """Settlement of one closed position."""

    trade_id: str
    pool_address: str
    entry_value_usd: float
    exit_value_usd: float
    fees_usd: float
    slippage_usd: float
    gross_pnl_usd: float
    net_pnl_usd: float
    exit_reason: str


class CapitalManager(LoggerMixin):
    """Opens, resizes and closes positions across the store and the ledger."""

    def __init__(
        self,
        store: StateStore,
        ledger: PortfolioLedger,
        epoch_manager: RunEpochManager,
        config: Optional[Dict[str, Any]] = None,
    ):
        super().__init__()
        self.config = config or {}
        self.store = store
        self.ledger = ledger
        self.epoch_manager = epoch_manager

    def _persist_capital_state(self) -> None:
        """Mirror the ledger snapshot into the capital_state row."""
        state = self.ledger.get_state()
        locked_balance = round_usd(D(state.deployed_usd) + D(state.locked_usd))
        self.store.save_capital_state(
            initial_capital=self.epoch_manager.get_starting_capital(),
            available_balance=round_usd(state.available_usd),
            locked_balance=locked_balance,
            total_realized_pnl=round_usd(state.realized_pnl_usd),
        )

    def open_position(
        self,
        trade_id: str,
        pool_address: str,
        tier: str,
        size_usd: float,
        entry_price: float,
        entry_fees: float = 0.0,
        entry_slippage: float = 0.0,
        pool_name: Optional[str] = None,
    ) -> LedgerPosition:
        """Record a new position, its trade and its capital lock.

        A trade id the ledger already tracks is resized instead.

        Raises:
            StoreUnavailable: If the store write fails (ledger unchanged)
            InsufficientCapital: In dev mode, if the size exceeds available capital
        """
        run_id = self.epoch_manager.require_active_run_id()

        if self.ledger.has_position(trade_id):
            self.logger.warning(f"Position {trade_id} already open, resizing to {format_usd(size_usd)}")
            self.resize_position(trade_id, size_usd)
            return self.ledger.get_position(trade_id)

        position = LedgerPosition(
            trade_id=trade_id,
            pool=pool_address,
            tier=tier,
            notional_usd=size_usd,
            pool_name=pool_name,
        )

        try:
            with self.store.transaction():
                self.store.insert_position(
                    trade_id=trade_id,
                    pool_address=pool_address,
                    size_usd=size_usd,
                    run_id=run_id,
                    tier=tier,
                    entry_price=entry_price,
                    opened_at=position.opened_at.isoformat(),
                )
                self.store.insert_trade(
                    trade_id=trade_id,
                    pool_address=pool_address,
                    entry_value_usd=size_usd,
                    run_id=run_id,
                    entry_price=entry_price,
                    entry_fees=entry_fees,
                    entry_slippage=entry_slippage,
                )
                self.store.lock_capital(trade_id, size_usd)
                # Raises before commit in dev mode when capital is short
                self.ledger.open(position, allow_update=False)
                self._persist_capital_state()
        except StoreUnavailable:
            if self.ledger.has_position(trade_id):
                self.ledger.close(trade_id)
            raise

        return position

    def resize_position(self, trade_id: str, new_size_usd: float) -> bool:
        """Resize an open position (partial close or add).

        Returns:
            False if the position is not open
        """
        if not self.ledger.has_position(trade_id):
            self.logger.warning(f"Cannot resize {trade_id}: position not open")
            return False

        old_size = self.ledger.get_position(trade_id).notional_usd
        try:
            with self.store.transaction():
                self.store.update_position_size(trade_id, new_size_usd)
                self.store.lock_capital(trade_id, new_size_usd)
                self.ledger.update(trade_id, new_size_usd)
                self._persist_capital_state()
        except StoreUnavailable:
            self.ledger.update(trade_id, old_size)
            raise
        return True

    def close_position(
        self,
        trade_id: str,
        exit_value_usd: float,
        exit_fees: float = 0.0,
        exit_slippage: float = 0.0,
        exit_price: Optional[float] = None,
        exit_reason: str = "EXIT",
    ) -> Optional[ClosedPosition]:
        """Close a position and settle its net PnL into capital.

        net = exit - entry - (entry + exit fees) - (entry + exit slippage)

        Returns:
            The settlement, or None if the trade is unknown
        """
        trade = self.store.get_trade(trade_id)
        if trade is None or trade["status"] != "open":
            self.logger.warning(f"Cannot close {trade_id}: no open trade record")
            return None

        entry_value = D(trade["entry_asset_value_usd"])
        fees = D(trade["entry_fees_paid"]) + D(exit_fees)
        slippage = D(trade["entry_slippage_usd"]) + D(exit_slippage)
        gross = D(exit_value_usd) - entry_value
        net = round_usd(gross - fees - slippage)

        with self.store.transaction():
            self.store.close_trade(
                trade_id,
                exit_value_usd=exit_value_usd,
                pnl_net=net,
                exit_reason=exit_reason,
                exit_fees=exit_fees,
                exit_slippage=exit_slippage,
                exit_price=exit_price,
            )
            self.store.close_position(trade_id, exit_reason, pnl_usd=net)
            self.store.release_lock(trade_id)

        closed = self.ledger.close(trade_id)
        self.ledger.settle_realized_pnl(net)
        self._persist_capital_state()

        self.logger.info(
            f"Closed {trade_id} ({exit_reason}): entry={format_usd(entry_value)} "
            f"exit={format_usd(exit_value_usd)} net={format_usd(net)}"
            + ("" if closed else " (not tracked by ledger)")
        )

        return ClosedPosition(
            trade_id=trade_id,
            pool_address=trade["pool_address"],
            entry_value_usd=float(entry_value),
            exit_value_usd=exit_value_usd,
            fees_usd=round_usd(fees),
            slippage_usd=round_usd(slippage),
            gross_pnl_usd=round_usd(gross),
            net_pnl_usd=net,
            exit_reason=exit_reason,
        )

    def update_locked_capital(self, locked_usd: float) -> None:
        """Set capital locked outside of tracked positions."""
        self.ledger.update_locked_capital(locked_usd)
        self._persist_capital_state()
