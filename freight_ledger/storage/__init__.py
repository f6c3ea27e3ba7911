"""
Storage layer for Freight Ledger.

One SQLite database per store; no transaction spans two stores.
"""
