"""Month-scoped reconciliation of recurring templates into expense instances.

``AutoSchedulerRunner.run`` is safe to call on every page load: within a month
it answers from its cache, and callers arriving while a pass is in flight
share that pass instead of starting their own. A failed pass leaves the cache
untouched so the next call simply tries again.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from clock import Clock, SystemClock
from models import InstanceStatus
from periods import YearMonth, year_month_of
from recurrence import commit_plan, reconcile
from rollover import RolloverResult, detect_month_rollover
from stores import ExpenseInstanceStore, RecurringTemplateStore

logger = logging.getLogger(__name__)


class RunnerPhase(str, Enum):
    idle = "idle"
    running = "running"


@dataclass
class SchedulerRunState:
    last_run_year_month: Optional[str] = None
    last_result: Optional[RolloverResult] = None
    phase: RunnerPhase = RunnerPhase.idle


class AutoSchedulerRunner:
    def __init__(
        self,
        templates: RecurringTemplateStore,
        instances: ExpenseInstanceStore,
        clock: Optional[Clock] = None,
    ) -> None:
        self.templates = templates
        self.instances = instances
        self.clock = clock or SystemClock()
        self.state = SchedulerRunState()
        self._inflight: Optional["asyncio.Task[RolloverResult]"] = None
        self._inflight_month: Optional[str] = None
        self._generation = 0

    @property
    def running(self) -> bool:
        return self.state.phase == RunnerPhase.running

    @property
    def last_result(self) -> Optional[RolloverResult]:
        return self.state.last_result

    def current_year_month(self) -> str:
        return year_month_of(self.clock.now())

    async def run(self) -> RolloverResult:
        while True:
            current = self.current_year_month()
            if (
                self.state.last_run_year_month == current
                and self.state.last_result is not None
            ):
                return self.state.last_result
            if self._inflight is None or self._inflight.done():
                self._inflight = asyncio.ensure_future(self._run(current))
                self._inflight_month = current
                self._inflight.add_done_callback(self._clear_inflight)
            if self._inflight_month == current:
                # Shielded so a cancelled caller does not cancel the pass for the others.
                return await asyncio.shield(self._inflight)
            # A pass for an earlier month is still running; let it finish, then
            # start one for the month this caller sees.
            await asyncio.wait({self._inflight})

    def invalidate(self) -> None:
        self._generation += 1
        self.state.last_run_year_month = None

    async def trigger_reset(self) -> int:
        current = self.current_year_month()
        updated = await self.instances.bulk_set_status(current, InstanceStatus.pending)
        self.invalidate()
        logger.info(f"month_reset: year_month={current} updated={updated}")
        return updated

    async def _run(self, current: str) -> RolloverResult:
        generation = self._generation
        self.state.phase = RunnerPhase.running
        try:
            templates = await self.templates.list_active()
            existing = await self.instances.list_for_month(current)
            plan = reconcile(templates, existing, current)
            report = await commit_plan(self.instances, plan)

            visible = await self.instances.list_all()
            result = detect_month_rollover(YearMonth.parse(current).first_day(), visible)
        finally:
            self.state.phase = RunnerPhase.idle

        if generation == self._generation:
            self.state.last_run_year_month = current
            self.state.last_result = result
        logger.info(
            f"scheduler_pass: year_month={current} planned={len(plan)} "
            f"created={report.created_count} "
            f"already_present={len(report.already_present)} "
            f"is_new_month={result.is_new_month}"
        )
        return result

    def _clear_inflight(self, task: "asyncio.Task[RolloverResult]") -> None:
        if self._inflight is task:
            self._inflight = None
