"""
Core modules for Freight Ledger.

This package contains identifier allocation, business code generation,
the expense cost lifecycle and the reconciliation sweeper.
"""
