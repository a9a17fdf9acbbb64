"""
BucketPilot - Ledger Core

Envelope budgeting where every bucket balance is derived from an
append-only log of monetary events.

DESIGN PRINCIPLES:
1. Balances are folded from events, never stored as totals
2. Rules propose → caller accepts → events are appended
3. Corrections are offsetting events, never edits
4. Assistant output passes the same gateway as user commands
5. Storage and sync transport are swappable
"""

__version__ = "1.0.0"
__author__ = "BucketPilot Team"
