"""
Publish Scheduler

Drains due delivery tasks target by target under a single-runner lease.
Each task ends in a tagged outcome; per-target error budgets act as a
circuit breaker and a run that leaves work behind schedules one
follow-up run.
"""

import time
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from changedetect.core.config import settings
from changedetect.core.domain.contracts import DeliveryContract, EntitySource
from changedetect.core.domain.entities import (
    Deferred, DispatchOutcome, Dropped, Failed, RunReport, StopRun, Success, TargetRunStats
)
from changedetect.core.enums import DeliveryStatus, Disposition, ErrorKind
from changedetect.core.exceptions import ChangeDetectionError
from changedetect.core.logging_config import LoggingContext, get_logger, log_exception, log_performance
from changedetect.infrastructure.database.models import DeliveryTarget, DeliveryTask
from changedetect.infrastructure.database.repositories.delivery_target import DeliveryTargetRepository
from changedetect.infrastructure.database.repositories.delivery_task import DeliveryTaskRepository
from changedetect.services.publishing.state_machine import (
    DeliveryStateMachine, classify_error_kind, extract_response_code
)
from changedetect.services.registry import (
    ContractRegistry, EntityRegistry, contract_registry, entity_registry
)

class PublishScheduler:
    """
    Batch delivery runner.

    Args:
        session: Session used for every read and transition; committed per task
        lease: Object with acquire()/renew()/release() guarding the run
        reschedule: Called with a delay in seconds when work remains
        clock: Wall clock for task timestamps (naive UTC)
        monotonic: Clock for the run timeout
        sleep: Used for the inter-task delay
    """

    def __init__(
        self,
        session: Session,
        lease,
        registry: Optional[EntityRegistry] = None,
        contracts: Optional[ContractRegistry] = None,
        reschedule: Optional[Callable[[int], None]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        monotonic: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], None]] = None,
        job_timeout: Optional[int] = None,
        dispatch_delay: Optional[int] = None,
        stale_after: Optional[int] = None
    ):
        self.session = session
        self.lease = lease
        self.registry = registry or entity_registry
        self.contracts = contracts or contract_registry
        self.reschedule = reschedule
        self.clock = clock or datetime.utcnow
        self.monotonic = monotonic or time.monotonic
        self.sleep = sleep or time.sleep
        self.job_timeout = job_timeout if job_timeout is not None else settings.publishing.job_timeout
        self.dispatch_delay = dispatch_delay if dispatch_delay is not None else settings.publishing.dispatch_delay
        self.stale_after = stale_after if stale_after is not None else settings.publishing.lease_ttl

        self.tasks = DeliveryTaskRepository(session)
        self.targets = DeliveryTargetRepository(session)
        self.machine = DeliveryStateMachine(self.tasks, clock=self.clock)
        self.logger = get_logger("publish_scheduler")

    # ======================== RUN ========================

    def run(self) -> RunReport:
        report = RunReport(run_id=str(uuid.uuid4()), started_at=self.clock())

        with LoggingContext(run_id=report.run_id):
            if not self.lease.acquire():
                report.skipped = True
                report.finished_at = self.clock()
                self.logger.info("Publish run skipped: another run holds the lease")
                return report

            started = self.monotonic()
            try:
                self._run(report, deadline=started + self.job_timeout)
            finally:
                self.lease.release()

            report.finished_at = self.clock()
            if report.needs_followup and self.reschedule is not None:
                self.reschedule(self.dispatch_delay)
                report.rescheduled = True

            log_performance(
                self.logger,
                "publish_run",
                (self.monotonic() - started) * 1000,
                published=report.published,
                targets=len(report.targets),
                timed_out=report.timed_out,
                rescheduled=report.rescheduled,
            )
        return report

    def _run(self, report: RunReport, deadline: float) -> None:
        report.reset_stale = self.tasks.reset_stale_dispatched(
            self.clock() - timedelta(seconds=self.stale_after)
        )
        self.tasks.commit()
        if report.reset_stale:
            self.logger.warning(
                f"Reset {report.reset_stale} stale dispatched tasks",
                extra={"reset": report.reset_stale}
            )

        for target in self.targets.active():
            if self.tasks.count_due(target.id, self.clock()) == 0:
                continue
            if self.monotonic() >= deadline:
                report.timed_out = True
                break

            if not self.lease.renew():
                report.lease_lost = True
                report.needs_followup = False
                self.logger.error("Publish run stopped: lease lost", extra={"target": target.name})
                break
            with LoggingContext(run_id=report.run_id, target=target.name):
                stats = self._process_target(target, deadline)
            report.targets[target.name] = stats

            if stats.stopped_reason == "timeout":
                report.timed_out = True
                break
            if stats.completed and self.tasks.count_due(target.id, self.clock()) > 0:
                report.needs_followup = True

    # ======================== TARGET ========================

    def _process_target(self, target: DeliveryTarget, deadline: float) -> TargetRunStats:
        stats = TargetRunStats(target_id=target.id, target_name=target.name)
        try:
            contract = self.contracts.create(target.contract_name, target.config or {})
            source = self.registry.get_source(target.entity_type)
        except ChangeDetectionError as exc:
            stats.stopped_reason = "misconfigured"
            self.logger.error(
                f"Cannot process target {target.name}: {exc}",
                extra={"target": target.name, "error_code": exc.error_code}
            )
            return stats

        batch = self.tasks.due_tasks(target.id, self.clock(), contract.batch_size())
        max_validation = contract.max_validation_errors()
        max_infrastructure = contract.max_infrastructure_errors()
        delay_seconds = contract.inter_task_delay_ms() / 1000.0

        self.logger.info(
            f"Processing {len(batch)} tasks for {target.name}",
            extra={"target": target.name, "batch": len(batch), "delay_ms": contract.inter_task_delay_ms()}
        )

        for task in batch:
            if self.monotonic() >= deadline:
                stats.stopped_reason = "timeout"
                self.logger.warning("Publish run timed out", extra={"target": target.name})
                return stats

            outcome = self.process_task(task, contract, source)
            self.tasks.commit()
            stats.record(outcome)

            if isinstance(outcome, StopRun):
                stats.stopped_reason = Disposition.STOP_JOB.value
                self.logger.warning(
                    f"Stopping {target.name}: contract requested stop ({outcome.reason})",
                    extra={"target": target.name, "task_id": outcome.task_id, "error_kind": outcome.kind.value}
                )
                return stats

            breached = self._breached_budget(stats, max_validation, max_infrastructure)
            if breached:
                stats.stopped_reason = breached
                self.logger.warning(
                    f"Stopping {target.name}: {breached} exceeded",
                    extra={
                        "target": target.name,
                        "task_id": outcome.task_id,
                        "last_error": self._last_error(task),
                        "validation_errors": stats.validation_errors,
                        "infrastructure_errors": stats.infrastructure_errors,
                    }
                )
                return stats

            if isinstance(outcome, Success) and not outcome.skipped and delay_seconds > 0:
                self.sleep(delay_seconds)

        stats.completed = True
        return stats

    @staticmethod
    def _breached_budget(stats: TargetRunStats, max_validation: int, max_infrastructure: int) -> Optional[str]:
        if max_validation > 0 and stats.validation_errors > max_validation:
            return "validation_budget"
        if max_infrastructure > 0 and stats.infrastructure_errors > max_infrastructure:
            return "infrastructure_budget"
        return None

    def _last_error(self, task: DeliveryTask) -> Optional[str]:
        self.tasks.refresh(task)
        return task.last_error

    # ======================== TASK ========================

    def process_task(self, task: DeliveryTask, contract: DeliveryContract, source: EntitySource) -> DispatchOutcome:
        """Run one task through the state machine."""
        task_id = task.id
        record = task.hash_record
        if record is None:
            self.machine.fail(task, "Hash record missing", ErrorKind.DATA)
            return Failed(task_id, kind=ErrorKind.DATA)
        if record.tombstoned_at is not None:
            self.machine.drop(task)
            return Dropped(task_id, reason=DeliveryStatus.SOURCE_DELETED.value)

        if not self.machine.dispatch(task):
            return Dropped(task_id, reason="claimed")

        try:
            entity = source.get(self.session, record.entity_id)
            if entity is None:
                self.machine.drop(task)
                return Dropped(task_id, reason=DeliveryStatus.SOURCE_DELETED.value)
            if not contract.should_publish(entity):
                self.machine.publish(task, record.composite_hash)
                return Success(task_id, skipped=True)
            payload = contract.build_payload(entity)
            delivered = contract.deliver(entity, payload)
        except Exception as exc:
            return self._handle_exception(task, contract, exc)

        if delivered:
            self.machine.publish(task, record.composite_hash)
            return Success(task_id)

        status = self.machine.defer(
            task, contract.retry_intervals(), contract.max_attempts(),
            "Target returned false", ErrorKind.DATA,
        )
        if status is DeliveryStatus.FAILED:
            return Failed(task_id, kind=ErrorKind.DATA)
        return Deferred(task_id, kind=ErrorKind.DATA)

    def _handle_exception(self, task: DeliveryTask, contract: DeliveryContract, exc: Exception) -> DispatchOutcome:
        task_id = task.id
        kind = classify_error_kind(exc, contract)
        response_code = extract_response_code(exc)
        message = str(exc) or type(exc).__name__
        try:
            disposition = Disposition(contract.classify_exception(exc))
        except Exception as policy_exc:
            log_exception(self.logger, policy_exc, {"task_id": task_id, "stage": "classify_exception"})
            disposition = Disposition.DEFER_RECORD

        self.logger.warning(
            f"Delivery failed for task {task_id}: {message}",
            extra={
                "task_id": task_id,
                "error_kind": kind.value,
                "response_code": response_code,
                "disposition": disposition.value,
            }
        )

        if disposition is Disposition.STOP_JOB:
            self.machine.defer(task, contract.retry_intervals(), contract.max_attempts(), message, kind, response_code)
            return StopRun(task_id, kind=kind, reason=message)

        if disposition is Disposition.FAIL_RECORD or not kind.is_retryable:
            self.machine.fail(task, message, kind, response_code)
            return Failed(task_id, kind=kind)

        status = self.machine.defer(
            task, contract.retry_intervals(), contract.max_attempts(), message, kind, response_code
        )
        if status is DeliveryStatus.FAILED:
            return Failed(task_id, kind=kind)
        return Deferred(task_id, kind=kind)

    # ======================== SINGLE TASK ========================

    def publish_now(self, task_id: int) -> Optional[DispatchOutcome]:
        """Deliver one task immediately. None when a run holds the lease or the task is unknown."""
        if not self.lease.acquire():
            return None
        try:
            task = self.tasks.get_by_id(task_id)
            if task is None or not DeliveryStatus(task.status).can_dispatch:
                return None
            target = task.target
            contract = self.contracts.create(target.contract_name, target.config or {})
            source = self.registry.get_source(target.entity_type)
            outcome = self.process_task(task, contract, source)
            self.tasks.commit()
            return outcome
        finally:
            self.lease.release()

__all__ = ['PublishScheduler']
