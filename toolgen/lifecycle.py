from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional

from toolgen.inputs import InputCollector, missing_message
from toolgen.models import (
    Failure,
    FailureKind,
    GenerationOutcome,
    GenerationView,
    Phase,
    Success,
    Tool,
)
from toolgen.orchestrator import RequestOrchestrator
from toolgen.reveal import ProgressiveRevealer

log = logging.getLogger(__name__)

Listener = Callable[[GenerationView], None]

_LOCKED_PHASES = {Phase.VALIDATING, Phase.GENERATING, Phase.REVEALING}
_SUBMITTABLE_PHASES = {Phase.IDLE, Phase.SETTLED}


class GenerationStateMachine:
    """
    Observable lifecycle of one tool's generation cycles.

    idle -> validating -> generating -> revealing -> settled -> (reset) idle.
    A submit from settled starts a new cycle. Every cycle gets a number;
    anything finishing for an older cycle (after reset, tool switch or
    teardown) is dropped instead of being shown.
    """

    def __init__(
        self,
        orchestrator: RequestOrchestrator,
        revealer: Optional[ProgressiveRevealer] = None,
        collector: Optional[InputCollector] = None,
        tool: Optional[Tool] = None,
    ):
        self.orchestrator = orchestrator
        self.revealer = revealer or ProgressiveRevealer()
        self.collector = collector or InputCollector()
        self.retry_state = orchestrator.new_retry_state()
        self.tool = tool
        self._phase = Phase.IDLE
        self._text = ""
        self._outcome: Optional[GenerationOutcome] = None
        self._cycle = 0
        self._request_task: Optional[asyncio.Task] = None
        self._listeners: List[Listener] = []

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def text(self) -> str:
        return self._text

    @property
    def outcome(self) -> Optional[GenerationOutcome]:
        return self._outcome

    @property
    def inputs_locked(self) -> bool:
        return self._phase in _LOCKED_PHASES

    def submit_label(self) -> str:
        if self.inputs_locked:
            return "Generating..."
        cost = self.tool.credits_cost if self.tool is not None else 0
        return f"Generate for {cost} Credits"

    def view(self) -> GenerationView:
        return GenerationView(
            phase=self._phase,
            text=self._text,
            outcome=self._outcome,
            inputs_locked=self.inputs_locked,
            submit_label=self.submit_label(),
        )

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.view()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                log.exception("lifecycle: listener failed phase=%s", snapshot.phase.value)

    def _enter(self, phase: Phase) -> None:
        log.debug("lifecycle.phase %s -> %s cycle=%d", self._phase.value, phase.value, self._cycle)
        self._phase = phase
        self._notify()

    def _settle(self, outcome: GenerationOutcome) -> None:
        # Final text comes from the outcome, never from the reveal cursor
        self._outcome = outcome
        self._text = outcome.display_text
        self._enter(Phase.SETTLED)

    def _stop_background(self) -> None:
        self.revealer.cancel()
        task, self._request_task = self._request_task, None
        if task is not None and not task.done():
            task.cancel()

    def set_value(self, name: str, value: str) -> bool:
        if self.inputs_locked:
            log.info("lifecycle: ignoring edit of %r while %s", name, self._phase.value)
            return False
        self.collector.set_value(name, value)
        return True

    def load_tool(self, tool: Tool) -> None:
        """Switch tools: drops the current cycle, entered values and retry count."""
        self._cycle += 1
        self._stop_background()
        self.tool = tool
        self.collector.clear()
        self.retry_state.reset()
        self._outcome = None
        self._text = ""
        self._enter(Phase.IDLE)

    def reset(self) -> None:
        """Back to idle; output is cleared, entered values are kept."""
        self._cycle += 1
        self._stop_background()
        self.retry_state.reset()
        self._outcome = None
        self._text = ""
        self._enter(Phase.IDLE)

    def _abandon(self, cycle: int) -> None:
        # The caller of submit() was cancelled; a newer cycle owns the state otherwise
        if cycle != self._cycle:
            return
        log.info("lifecycle: cycle %d cancelled by caller", cycle)
        self.reset()

    def teardown(self) -> None:
        self._cycle += 1
        self._stop_background()
        self._listeners.clear()

    def skip_reveal(self) -> bool:
        if self._phase is not Phase.REVEALING or not isinstance(self._outcome, Success):
            return False
        self.revealer.cancel()
        self._settle(self._outcome)
        return True

    def _on_prefix(self, cycle: int) -> Callable[[str], None]:
        def _update(prefix: str) -> None:
            if cycle != self._cycle or self._phase is not Phase.REVEALING:
                return
            self._text = prefix
            self._notify()

        return _update

    async def submit(self) -> Optional[GenerationOutcome]:
        """
        Run one cycle. Returns the outcome, or None when the submit was ignored
        (no tool loaded, a cycle already running) or the cycle was dropped by
        reset/tool switch/teardown while the request was in flight.
        """
        tool = self.tool
        if tool is None:
            log.warning("lifecycle: submit without a loaded tool")
            return None
        if self._phase not in _SUBMITTABLE_PHASES:
            log.debug("lifecycle: submit ignored while %s", self._phase.value)
            return None

        self.revealer.cancel()
        self._cycle += 1
        cycle = self._cycle
        self._outcome = None
        self._text = ""
        self._enter(Phase.VALIDATING)

        missing = self.collector.validate(tool.inputs)
        if missing:
            outcome: GenerationOutcome = Failure(kind=FailureKind.VALIDATION, message=missing_message(missing))
            self._settle(outcome)
            return outcome

        self._enter(Phase.GENERATING)
        task = asyncio.create_task(self.orchestrator.generate(tool, self.collector, self.retry_state))
        self._request_task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            self._abandon(cycle)
            raise
        if self._request_task is task:
            self._request_task = None
        if cycle != self._cycle or task.cancelled():
            log.info("lifecycle: cycle %d dropped before the request settled", cycle)
            return None

        outcome = task.result()
        if isinstance(outcome, Failure):
            self._settle(outcome)
            return outcome

        self._outcome = outcome
        self._enter(Phase.REVEALING)
        reveal_task = self.revealer.start(outcome.text, self._on_prefix(cycle))
        try:
            await asyncio.wait({reveal_task})
        except asyncio.CancelledError:
            self._abandon(cycle)
            raise
        if cycle == self._cycle and self._phase is Phase.REVEALING:
            self._settle(outcome)
        return outcome
