"""
Core modules for the verification gateway.

This package contains credential lookup, plan authorization, the credit
ledger, the query log and the orchestrator that drives a lookup.
"""
