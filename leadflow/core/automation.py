"""
Automation Service

Glue between the outside world and the engine:

- handle_event(): match an event against active workflows and start one run
  per match. A failing match never affects the others and nothing is raised
  back to the event source.
- sweep(): resume suspended runs whose wake time has passed (each claimed
  exactly once even if sweeps overlap), then fire time-based triggers
  scheduled since the previous sweep. The window start is persisted and each
  (trigger, scheduled time, lead) is claimed before its run starts, so
  duplicate or late ticks neither repeat nor lose a firing. A run whose
  resumption crashes after its claim is failed rather than left running.

Runs started for one event execute one after another on the same session;
concurrency comes from running several workers. There is no ordering
guarantee between runs, even for the same lead.
"""

import logging
import os
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from .actions import ActionDispatcher
from .collaborators import Collaborators
from .engine import WorkflowEngine
from .lead_locks import LeadLocks
from .repository import WorkflowRepository
from .run_store import RunStore
from .triggers import TimeReachedEvent, TriggerMatcher

logger = logging.getLogger(__name__)

TIME_TRIGGER_CURSOR = "time_triggers"


class AutomationService:

    def __init__(
        self,
        db_session: Session,
        collaborators: Collaborators,
        locks: Optional[LeadLocks] = None,
        step_budget: Optional[int] = None,
    ):
        self.db_session = db_session
        self.repository = WorkflowRepository(db_session)
        self.store = RunStore(db_session)
        self.matcher = TriggerMatcher(self.repository)
        self.engine = WorkflowEngine(
            db_session,
            ActionDispatcher(collaborators, locks),
            step_budget=step_budget,
        )

    async def handle_event(self, event) -> List[Dict[str, Any]]:
        """
        Start a run for every trigger the event matches.

        Time-based matches are claimed first: a (workflow, trigger node,
        scheduled time, lead) that some sweep already fired is skipped.

        Returns:
            One engine result per match that got as far as creating a run
        """
        results: List[Dict[str, Any]] = []
        for match in self.matcher.match(event):
            try:
                firing = None
                if match.trigger_kind == "time_reached":
                    firing = self.store.claim_trigger_firing(
                        match.workflow_id,
                        match.entry_node_id,
                        datetime.fromisoformat(match.trigger_data["scheduled_at"]),
                        match.lead_id,
                    )
                    if firing is None:
                        continue

                result = await self.engine.start_run(
                    match.workflow,
                    entry_node_id=match.entry_node_id,
                    lead_id=match.lead_id,
                    trigger_kind=match.trigger_kind,
                    trigger_data=match.trigger_data,
                )
                results.append(result)
                if firing is not None:
                    self.store.link_firing(firing, result["run_id"])
            except Exception as e:
                # Storage failures end up here; engine failures are already contained in the run
                self.db_session.rollback()
                logger.exception(
                    f"Could not run workflow {match.workflow_id} for lead {match.lead_id}: {e}"
                )
        return results

    async def sweep(
        self,
        now: Optional[datetime] = None,
        since: Optional[datetime] = None,
        batch_size: Optional[int] = None,
        lookback: Optional[timedelta] = None,
    ) -> Dict[str, Any]:
        """
        One scheduler tick.

        The time-trigger window is (since, now]. Without an explicit `since`
        it starts where the previous sweep ended (the persisted cursor), or
        `lookback` before now on the very first sweep. A duplicate or
        out-of-order tick therefore finds an empty window, and a late tick
        covers everything since the last one.

        Args:
            now: current time (naive UTC)
            since: override for the start of the time-trigger window
            batch_size: max suspended runs resumed per tick (env SWEEP_BATCH_SIZE)
            lookback: first-sweep window (default env SWEEP_INTERVAL_SECONDS)

        Returns:
            {"resumed": [run ids], "skipped": [run ids claimed elsewhere],
             "time_triggered": number of runs started by time triggers}
        """
        now = now or datetime.utcnow()
        batch_size = batch_size or int(os.getenv("SWEEP_BATCH_SIZE", "100"))
        lookback = lookback or timedelta(seconds=int(os.getenv("SWEEP_INTERVAL_SECONDS", "60")))

        resumed: List[int] = []
        skipped: List[int] = []
        for run_id in self.store.due_run_ids(now, limit=batch_size):
            if not self.store.claim(run_id, now):
                skipped.append(run_id)
                continue
            try:
                await self.engine.resume_run(run_id, now=now)
                resumed.append(run_id)
            except Exception as e:
                self.db_session.rollback()
                logger.exception(f"Resuming run {run_id} failed: {e}")
                self._fail_claimed_run(run_id, e)

        window_start = since or self.store.sweep_cursor(TIME_TRIGGER_CURSOR) or now - lookback
        time_triggered = 0
        if window_start < now:
            time_triggered = len(await self.handle_event(TimeReachedEvent(now=now, since=window_start)))
            self.store.advance_sweep_cursor(TIME_TRIGGER_CURSOR, now)

        if resumed or skipped or time_triggered:
            logger.info(
                f"Sweep at {now.isoformat()}: resumed={len(resumed)}, "
                f"skipped={len(skipped)}, time_triggered={time_triggered}"
            )
        return {"resumed": resumed, "skipped": skipped, "time_triggered": time_triggered}

    def _fail_claimed_run(self, run_id: int, error: Exception) -> None:
        # The claim moved the run out of 'suspended', so no later sweep would pick it up again
        try:
            if self.store.fail_claimed(run_id, f"Resumption crashed: {type(error).__name__}: {error}"):
                logger.error(f"Run {run_id} failed (internal_error) after its resumption crashed")
        except Exception as e:
            self.db_session.rollback()
            logger.exception(f"Could not mark run {run_id} as failed: {e}")
