"""Logistics back-office: order lifecycle, stock ledger and seller invoicing."""

__version__ = "0.1.0"
