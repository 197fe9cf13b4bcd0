"""Custody core services: hashing, ledger, recorder, verifiers, detection."""
