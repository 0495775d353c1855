"""Gigbook lifecycle engine."""

from gigbook.core.lifecycle import AcceptedProposal, LifecycleOrchestrator
from gigbook.core.metrics import Balance, BalanceScope, MetricsAggregator, MetricsCache
from gigbook.core.transitions import SideEffect, Transition, attempt_transition
from gigbook.core.unit_of_work import TransactionRunner

__all__ = [
    "AcceptedProposal",
    "Balance",
    "BalanceScope",
    "LifecycleOrchestrator",
    "MetricsAggregator",
    "MetricsCache",
    "SideEffect",
    "Transition",
    "TransactionRunner",
    "attempt_transition",
]
