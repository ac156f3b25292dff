"""Tenant credit reservation and release."""

from jobrota.billing.credits import CreditLedger, SQLiteCreditLedger

__all__ = ["CreditLedger", "SQLiteCreditLedger"]
