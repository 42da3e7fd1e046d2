"""Task scheduling, the orchestrator control loop, and the process runner."""

from cartpilot.orchestrator.metrics import OrchestratorStats, write_stats_file
from cartpilot.orchestrator.orchestrator import Orchestrator
from cartpilot.orchestrator.runner import run_tasks
from cartpilot.orchestrator.scheduler import TaskScheduler, retry_delay

__all__ = [
    "Orchestrator",
    "OrchestratorStats",
    "TaskScheduler",
    "retry_delay",
    "run_tasks",
    "write_stats_file",
]
