"""Event dispatch loop and deferred wake scheduling.

One invocation per external trigger: take the queue snapshot, route every
entry to a rule handler or the deferred index, acknowledge it, and leave
exactly one wake timer armed for the earliest deferred entry. Nothing runs
between triggers except that timer.
"""

from recovery_coordinator.coordinator.cancellation import CancellationToken
from recovery_coordinator.coordinator.dispatcher import EventDispatcher
from recovery_coordinator.coordinator.executor import RuleExecutor
from recovery_coordinator.coordinator.service import RecoveryCoordinator
from recovery_coordinator.coordinator.timeouts import TimeoutScheduler
from recovery_coordinator.coordinator.wake import WakeScheduler

__all__ = [
    "CancellationToken",
    "EventDispatcher",
    "RecoveryCoordinator",
    "RuleExecutor",
    "TimeoutScheduler",
    "WakeScheduler",
]
