# freight_ledger/demo/seed_demo_data.py

from decimal import Decimal
from typing import List

from freight_ledger.core.ledger import Ledger, build_ledger
from freight_ledger.storage.models import Cost, CostType


def seed(ledger: Ledger) -> List[Cost]:
    """Create two shipments with a customer, a supplier and a few costs."""
    ledger.initialize()
    customer = ledger.codes.create_customer("Siam Trading Co., Ltd.")
    supplier = ledger.codes.create_supplier("Laem Chabang Trucking")

    costs = []
    for bl_number in ("BL-DEMO-001", "BL-DEMO-002"):
        shipment = ledger.codes.create_shipment(bl_number=bl_number)
        for description, amount, cost_type, unit in (
            ("Ocean freight", "1500.00", CostType.RECEIVABLE, customer),
            ("Trucking", "450.00", CostType.PAYABLE, supplier),
            ("Customs clearance", "300.00", CostType.PAYABLE, supplier),
        ):
            result = ledger.costs.add_cost(
                shipment.id,
                type=cost_type,
                amount=Decimal(amount),
                description=description,
                financial_subject_id=1,
                settlement_unit_type=unit.kind,
                settlement_unit_id=unit.id,
                currency="THB"
            )
            costs.append(result.cost)
    return costs


if __name__ == "__main__":
    seeded = seed(build_ledger())
    print(f"Demo data inserted: {len(seeded)} costs")
