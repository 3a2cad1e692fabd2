"""
PhiloGraph - Plans and Steps

A Plan is an ordered list of Steps with explicit compensations. Steps never
share mutable state directly: every step's result is stored in the
StepContext under the step's name, and later steps read it from there.

Step anatomy:
- do(ctx) -> result              the forward action
- compensate(ctx, result)        undo of a committed do (None: nothing to undo)
- payload                        dict (or ctx -> dict) written with the pending
                                 log entry; carries pre-assigned ids so a crashed
                                 pending step can still be compensated
- undo(result) -> dict           extra data written with the committed entry
- touches(result) -> ids         concept ids whose caches are invalidated
"""

from typing import Any, Callable, Dict, Iterable, List, Optional, Union
from dataclasses import dataclass, field
from enum import Enum
import threading
import time
import uuid

from philograph.core.errors import PlanCancelledError


class StepCategory(str, Enum):
    """Determines the per-step timeout budget."""
    STORE = "store"
    REASONING = "reasoning"


def new_plan_id() -> str:
    return f"plan_{uuid.uuid4().hex[:12]}"


class CancelToken:
    """
    Explicit cancel and/or deadline for one plan.

    Checked by the coordinator before each step and before each retry.
    """

    def __init__(
        self,
        deadline_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self._clock = clock
        self._event = threading.Event()
        self._reason = "Plan cancelled"
        self._deadline = clock() + deadline_seconds if deadline_seconds is not None else None

    def cancel(self, reason: str = "Plan cancelled") -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and self._clock() >= self._deadline

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise PlanCancelledError(self._reason)
        if self._deadline is not None and self._clock() >= self._deadline:
            raise PlanCancelledError("Plan deadline exceeded")


@dataclass
class StepContext:
    """Results threaded between the steps of one plan."""
    plan_id: str
    args: Dict[str, Any] = field(default_factory=dict)
    results: Dict[str, Any] = field(default_factory=dict)

    def result(self, step_name: str) -> Any:
        if step_name not in self.results:
            raise KeyError(f"Step '{step_name}' has no result in plan {self.plan_id}")
        return self.results[step_name]


Payload = Union[Dict[str, Any], Callable[[StepContext], Dict[str, Any]]]


@dataclass
class Step:
    name: str
    kind: str
    category: StepCategory
    do: Callable[[StepContext], Any]
    compensate: Optional[Callable[[StepContext, Any], None]] = None
    payload: Payload = field(default_factory=dict)
    undo: Optional[Callable[[Any], Dict[str, Any]]] = None
    touches: Optional[Callable[[Any], Iterable[str]]] = None

    def payload_for(self, ctx: StepContext) -> Dict[str, Any]:
        if callable(self.payload):
            return dict(self.payload(ctx))
        return dict(self.payload)

    def undo_payload(self, ctx: StepContext, result: Any) -> Dict[str, Any]:
        payload = self.payload_for(ctx)
        if self.undo is not None:
            payload.update(self.undo(result))
        payload['touches'] = self.touched(result)
        return payload

    def touched(self, result: Any) -> List[str]:
        if self.touches is None:
            return []
        return [concept_id for concept_id in dict.fromkeys(self.touches(result)) if concept_id]


@dataclass
class Plan:
    """
    Ordered steps plus the concept ids the plan must lock.

    finalize(ctx) builds the caller-facing result once every step committed.
    """
    kind: str
    steps: List[Step]
    concept_ids: List[str] = field(default_factory=list)
    args: Dict[str, Any] = field(default_factory=dict)
    plan_id: str = field(default_factory=new_plan_id)
    finalize: Optional[Callable[[StepContext], Any]] = None


@dataclass
class StepOutcome:
    name: str
    status: str
    attempts: int = 1


@dataclass
class PlanResult:
    plan_id: str
    kind: str
    output: Any
    outcomes: List[StepOutcome] = field(default_factory=list)
