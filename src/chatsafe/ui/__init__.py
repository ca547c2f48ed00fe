"""
Operator interfaces for ChatSafe.

- **console.py**: Interactive console for live agent management: status and
  outcome counters, ledger reads, journal inspection and graceful shutdown.
"""
