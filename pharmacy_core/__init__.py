"""
Pharmacy Core

Credential vault and patient wallet ledger for the pharmacy system: salted
password digests, brute-force lockout, an append-only wallet ledger using
Decimal money, masked card storage, and payment orchestration.
"""

__version__ = "1.0.0"
