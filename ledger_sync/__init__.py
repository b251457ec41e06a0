"""
Ledger Sync - Source Package

Synchronization core for an offline-first personal finance ledger
(accounts, categories, transactions, budget plans) reconciled through
a single untrusted remote store.

DESIGN PRINCIPLES:
1. The remote never sees plaintext
2. Deletions are permanent (tombstones always win)
3. Only the merge under the ledger lease assigns durable identifiers
4. A sync round is all-or-nothing for local state
5. Storage and transport are swappable
"""

__version__ = "1.0.0"
__author__ = "Ledger Sync Team"
