"""
Freight Ledger.

Identifier allocation, expense lifecycle and cross-store reconciliation
for freight-forwarding records kept in independent databases.
"""

__version__ = "0.1.0"
