"""
Budget Kernel - sequential approval workflow engine with a budget
reservation ledger.

- Fiscal calendar with irreversible period close
- Cost center hierarchy with cycle detection
- Row-locked budget reservation / consumption ledger
- Append-only, multi-step approval workflow
- Gap-free, formatted document numbering
"""

__version__ = "0.1.0"
