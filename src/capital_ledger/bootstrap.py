"""
Boot sequence.

Order matters: run epoch -> startup reconciliation -> ledger seeded. Nothing
that can open a position is handed out until every step has succeeded.
"""

from dataclasses import dataclass
from typing import Optional

from .core.config_manager import ConfigManager
from .core.errors import (
    HybridStateBlocked,
    InvalidCapital,
    ReconciliationSealError,
    StartupAborted,
    StoreUnavailable,
)
from .core.logging_utils import get_logger
from .epoch.run_epoch import RunEpoch, RunEpochManager, StartupValidation
from .portfolio.capital_manager import CapitalManager
from .portfolio.ledger import PortfolioLedger
from .reconcile.pnl import PnLReconciliationService
from .reconcile.startup import ReconcileSummary, StartupReconciler
from .state.store import StateStore


@dataclass
class BootContext:
    """Everything the trading loop needs after a successful boot."""

    config: ConfigManager
    store: StateStore
    ledger: PortfolioLedger
    epoch_manager: RunEpochManager
    reconciler: StartupReconciler
    pnl_service: PnLReconciliationService
    capital_manager: CapitalManager
    validation: StartupValidation
    epoch: RunEpoch
    summary: ReconcileSummary

    @property
    def run_id(self) -> str:
        return self.epoch.run_id


def bootstrap(
    config: ConfigManager,
    capital: Optional[float] = None,
    store: Optional[StateStore] = None,
) -> BootContext:
    """Run the boot sequence.

    Args:
        config: Validated configuration
        capital: Fresh capital supplied by the operator (None to continue)
        store: Store to use instead of the configured database path

    Returns:
        A ready BootContext

    Raises:
        HybridStateBlocked: Fresh capital was supplied while positions are open
        StartupAborted: Any other fatal boot failure
    """
    logger = get_logger("bootstrap", config.get_section("logging"))
    validated = config.get_validated_config()

    if store is None:
        store = StateStore(validated.database.path)
    try:
        store.initialize()
    except StoreUnavailable as e:
        raise StartupAborted(f"Cannot open state store: {e}", cause=e) from e

    ledger = PortfolioLedger.from_config(config)
    epoch_manager = RunEpochManager.from_config(store, config)

    try:
        validation = epoch_manager.validate_startup_conditions(
            fresh_capital_provided=capital is not None,
            amount_usd=capital,
        )
    except InvalidCapital as e:
        raise StartupAborted(str(e), cause=e) from e

    if validation.store_error is not None:
        raise StartupAborted(validation.error or "Cannot read prior state", cause=validation.store_error)
    if not validation.valid:
        raise HybridStateBlocked(validation.error or "Startup validation failed", validation)

    try:
        epoch = epoch_manager.initialize_run_epoch(validation)
    except (StoreUnavailable, InvalidCapital) as e:
        raise StartupAborted(f"Cannot start run epoch: {e}", cause=e) from e

    reconciler = StartupReconciler.from_config(store, ledger, epoch_manager, config)
    # Raises StartupAborted with the reconcile summary attached
    summary = reconciler.run(validation.mode)

    state = ledger.get_state()
    try:
        reconciler.validate_hydration(state.position_count, state.deployed_usd + state.locked_usd)
    except ReconciliationSealError as e:
        raise StartupAborted(str(e), cause=e, result=summary) from e

    pnl_service = PnLReconciliationService.from_config(store, ledger, epoch_manager, reconciler, config)
    capital_manager = CapitalManager(store, ledger, epoch_manager, config=config.to_dict())

    history = epoch_manager.check_historical_data_outside_run()
    logger.info(
        f"Boot complete: run={epoch.run_id} mode={validation.mode} "
        f"capital=${summary.total_capital_usd:,.2f} excluded_prior_trades={history.prior_closed_trades}"
    )

    return BootContext(
        config=config,
        store=store,
        ledger=ledger,
        epoch_manager=epoch_manager,
        reconciler=reconciler,
        pnl_service=pnl_service,
        capital_manager=capital_manager,
        validation=validation,
        epoch=epoch,
        summary=summary,
    )


def shutdown(context: BootContext) -> None:
    """Graceful shutdown: close the run epoch and the store."""
    try:
        context.epoch_manager.close_run_epoch()
    finally:
        context.store.close()
