"""
Demo data for Freight Ledger.
"""
