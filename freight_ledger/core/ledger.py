"""
Wiring of the core components over one set of stores.

Request handlers and the CLI build a `Ledger` once and call its
components; none of them holds state beyond the store paths.
"""

import random
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from freight_ledger.config.loader import LedgerConfig
from freight_ledger.storage.repository import (
    FinanceRepository,
    MasterDataRepository,
    ShipmentRepository,
    initialize_schema,
)
from .cascade import CascadeDeleter
from .codes import CodeGenerator
from .costs import CostEntry
from .lifecycle import CostLifecycle
from .reconciliation import Sweeper
from .scheduler import PeriodicSweeper


@dataclass
class Ledger:
    config: LedgerConfig
    master: MasterDataRepository
    shipments: ShipmentRepository
    finance: FinanceRepository
    codes: CodeGenerator
    sweeper: Sweeper
    lifecycle: CostLifecycle
    costs: CostEntry
    cascade: CascadeDeleter

    def initialize(self) -> None:
        """Create the tables of every store."""
        initialize_schema(self.config.stores)

    def periodic_sweeper(self) -> PeriodicSweeper:
        return PeriodicSweeper(self.sweeper, self.config.sweeper.interval_seconds)


def build_ledger(
    config: Optional[LedgerConfig] = None,
    clock: Callable[[], datetime] = datetime.now,
    rng: Optional[random.Random] = None,
    reconcile: bool = True
) -> Ledger:
    """Build every core component for the stores named in `config`.

    Args:
        config: Loaded configuration; defaults apply when None
        clock: Source of the current time for codes and lifecycle stamps
        rng: Random source for customer and supplier codes
        reconcile: Run a best-effort sweep after every mutation
    """
    config = config or LedgerConfig()
    stores = config.stores
    finance = FinanceRepository(stores.finance)
    shipments = ShipmentRepository(stores.shipment)
    sweeper = Sweeper(stores)
    codes = CodeGenerator(stores, config.codes, clock=clock, rng=rng)

    return Ledger(
        config=config,
        master=MasterDataRepository(stores.main),
        shipments=shipments,
        finance=finance,
        codes=codes,
        sweeper=sweeper,
        lifecycle=CostLifecycle(
            finance,
            codes,
            config.expenses,
            sweeper=sweeper if reconcile else None,
            clock=clock
        ),
        costs=CostEntry(
            shipments,
            finance,
            sweeper=sweeper if reconcile else None,
            clock=clock
        ),
        cascade=CascadeDeleter(shipments, finance, sweeper, reconcile=reconcile),
    )
