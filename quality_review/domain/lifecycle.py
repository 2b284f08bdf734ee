"""Review cycle lifecycle: which cycle operations a workflow move triggers."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Stage:
    """Where a card sits in its workflow, as far as reviews care."""

    in_review: bool = False
    done: bool = False


@dataclass(slots=True)
class TransitionResult:
    entered_review: bool = False
    left_review: bool = False
    moved_to_done: bool = False
    reopened_from_done: bool = False
    cycle_opened: bool = False
    cycle_closed: bool = False
    cycle_deleted_as_transient: bool = False
    card_locked: bool = False
    card_unlocked: bool = False
    final_cycle_id: int | None = None
    opened_cycle_id: int | None = None


def plan_transition(from_stage: Stage, to_stage: Stage) -> TransitionResult:
    """
    Edge flags for a move; the effect flags are filled in once applied.

    Example:
        >>> plan_transition(Stage(in_review=True), Stage(done=True)).moved_to_done
        True
    """
    return TransitionResult(
        entered_review=to_stage.in_review and not from_stage.in_review,
        left_review=from_stage.in_review and not to_stage.in_review,
        moved_to_done=to_stage.done and not from_stage.done,
        reopened_from_done=from_stage.done and not to_stage.done,
    )
