"""
Custody CLI
===========
Command-line interface for the custody ledger.

Usage:
    python -m cli.custody ledger status
    python -m cli.custody ledger verify --chain ndep-evidence-chain
    python -m cli.custody anomalies detect --evidence EV-1
    python -m cli.custody algorithms list
"""
