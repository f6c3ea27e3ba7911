"""
Command-line interface for Freight Ledger.
"""
