"""Remote bootstrap: run the declared steps in order and record every outcome."""

from __future__ import annotations

import subprocess
import time
import traceback
from typing import Iterable, List, Optional, Sequence

from factoryvm.exceptions import FactoryError, ReadinessTimeout
from factoryvm.models import StepOutcome, StepResult
from factoryvm.status import StatusBroadcaster
from factoryvm.steps import StepContext, StepDefinition
from factoryvm.utils import format_elapsed, log

CANCELLED_DETAIL = "cancelled"


def remediation_for(step: StepDefinition, ctx: StepContext) -> str:
    return (
        f"factory-vm bootstrap --step {step.name}   "
        f"(log: {ctx.config.log_dir / (step.name + '.log')})"
    )


class BootstrapOrchestrator:
    """Drive the guest from a bare OS to a configured build server.

    A step failure never stops the run: it is recorded and the next step
    executes. Steps whose prerequisites failed are recorded as skipped without
    being attempted.
    """

    def __init__(
        self,
        ctx: StepContext,
        steps: Sequence[StepDefinition],
        status: Optional[StatusBroadcaster] = None,
    ) -> None:
        self.ctx = ctx
        self.steps = list(steps)
        self.status = status

    def _announce(self, message: str) -> None:
        if self.status is not None:
            self.status.update(message)

    def run(self, only: Optional[Iterable[str]] = None, wait_ready: bool = True) -> List[StepResult]:
        selected = set(only) if only else None
        steps = [step for step in self.steps if selected is None or step.name in selected]
        results: List[StepResult] = []

        if wait_ready:
            try:
                self.ctx.remote.wait_until_ready(timeout=self.ctx.config.ssh_ready_timeout, cancel=self.ctx.cancel)
            except ReadinessTimeout as exc:
                log("ERROR", str(exc))
                for step in steps:
                    results.append(StepResult(step.name, step.optional, StepOutcome.FAILED,
                                              detail="guest never became reachable over SSH",
                                              remediation="factory-vm status && factory-vm bootstrap"))
                return results

        succeeded = set() if selected is None else {step.name for step in self.steps if step.name not in selected}
        total = len(steps)
        for index, step in enumerate(steps, start=1):
            result = self._run_step(step, index, total, succeeded)
            if result.outcome == StepOutcome.SUCCESS:
                succeeded.add(step.name)
            results.append(result)
        return results

    def _run_step(self, step: StepDefinition, index: int, total: int, succeeded: set) -> StepResult:
        label = f"[{index}/{total}] {step.name}"
        if self.ctx.cancel is not None and self.ctx.cancel.is_set():
            log("WARN", f"{label}: not run (cancelled)")
            return StepResult(step.name, step.optional, StepOutcome.SKIPPED, detail=CANCELLED_DETAIL,
                              remediation=remediation_for(step, self.ctx))
        blocked = [name for name in step.requires if name not in succeeded]
        if blocked:
            detail = f"requires {', '.join(blocked)}"
            log("WARN", f"{label}: skipped ({detail})")
            return StepResult(step.name, step.optional, StepOutcome.SKIPPED, detail=detail,
                              remediation=remediation_for(step, self.ctx))

        log("INFO", f"{label}: {step.description or step.name}...")
        self._announce(f"Configuring: {step.description or step.name}")
        start = time.monotonic()
        try:
            detail = step.action(self.ctx) or ""
        except (FactoryError, subprocess.SubprocessError, OSError) as exc:
            elapsed = time.monotonic() - start
            remediation = getattr(exc, "remediation", None) or remediation_for(step, self.ctx)
            kind = "optional step failed" if step.optional else "FAILED"
            log("ERROR" if not step.optional else "WARN", f"{label}: {kind} after {format_elapsed(elapsed)}: {exc}")
            return StepResult(step.name, step.optional, StepOutcome.FAILED, detail=str(exc),
                              remediation=remediation, elapsed=elapsed)
        except Exception as exc:
            elapsed = time.monotonic() - start
            log("ERROR", f"{label}: unexpected error after {format_elapsed(elapsed)}: {exc!r}")
            log("DEBUG", traceback.format_exc())
            return StepResult(step.name, step.optional, StepOutcome.FAILED,
                              detail=f"unexpected error: {exc!r}", remediation=remediation_for(step, self.ctx),
                              elapsed=elapsed)
        elapsed = time.monotonic() - start
        log("SUCCESS", f"{label}: done in {format_elapsed(elapsed)}" + (f" ({detail})" if detail else ""))
        return StepResult(step.name, step.optional, StepOutcome.SUCCESS, detail=detail, elapsed=elapsed)
