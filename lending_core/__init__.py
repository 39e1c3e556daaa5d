"""
Micro-Lending Ledger Core

Financial computation and reconciliation engine for micro-loans: modality-based
due-amount calculation, installment schedules, an append-only ledger with
compensating reversals, and debt renegotiation agreements. All money math uses
Decimal precision.
"""

__version__ = "1.0.0"
