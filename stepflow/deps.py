from __future__ import annotations

from stepflow.agent.scheduler import StepScheduler

_scheduler: StepScheduler | None = None


def set_dependencies(scheduler: StepScheduler) -> None:
    global _scheduler
    _scheduler = scheduler


def get_scheduler() -> StepScheduler:
    if _scheduler is None:
        raise RuntimeError("StepScheduler not initialized")
    return _scheduler
