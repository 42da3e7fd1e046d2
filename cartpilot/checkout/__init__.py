"""Per-task checkout state machine."""

from cartpilot.checkout.state_machine import (
    TERMINAL_STAGES,
    CheckoutRun,
    RunConfig,
    RunOutcome,
    Stage,
    StageEvent,
)

__all__ = [
    "CheckoutRun",
    "RunConfig",
    "RunOutcome",
    "Stage",
    "StageEvent",
    "TERMINAL_STAGES",
]
