"""
Darkflow Settlement Watcher

The keeper executes settlements the matching step has activated.

Critical Invariants:
- Never executes a settlement that is missing or inactive
- Never issues the simulated instruction on mainnet
- Never references the aggregator off mainnet
- Never lets one event's failure stop the subscription
"""

from darkflow.settlement.watcher import HandleOutcome, SettlementWatcher, WatcherConfig

__all__ = ["HandleOutcome", "SettlementWatcher", "WatcherConfig"]
