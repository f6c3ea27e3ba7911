"""
Configuration for Freight Ledger.
"""
