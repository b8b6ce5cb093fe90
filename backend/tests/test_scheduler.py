"""
Publish Scheduler Test Suite
"""

from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest
from sqlalchemy import update

from changedetect.core.domain.entities import Dropped, Success
from changedetect.core.enums import DeliveryStatus, Disposition, ErrorKind, TargetStatus
from changedetect.core.exceptions import DeliveryInfrastructureError, DeliveryValidationError
from changedetect.infrastructure.database.models import DeliveryTask
from changedetect.infrastructure.database.repositories.delivery_task import DeliveryTaskRepository
from changedetect.infrastructure.database.repositories.delivery_target import DeliveryTargetRepository
from changedetect.infrastructure.database.repositories.hash_record import HashRecordRepository
from changedetect.services.hashing.bulk_processor import BulkHashProcessor
from changedetect.services.publishing.scheduler import PublishScheduler
from changedetect.services.publishing.task_sync import DeliveryTaskSynchronizer

from tests.fakes import InMemoryLease, RecordingSleep, SteppingMonotonic, StubDeliveryContract, add_target

# ======================== FIXTURES ========================

@pytest.fixture
def stub():
    return StubDeliveryContract()

@pytest.fixture
def sleep():
    return RecordingSleep()

@pytest.fixture
def rescheduled():
    return []

@pytest.fixture
def make_scheduler(session, lease, registry, contracts, clock, sleep, rescheduled):
    def factory(**overrides):
        options = dict(
            registry=registry,
            contracts=contracts,
            reschedule=rescheduled.append,
            clock=clock,
            monotonic=SteppingMonotonic(),
            sleep=sleep,
            job_timeout=60,
            dispatch_delay=10,
            stale_after=1860,
        )
        options.update(overrides)
        return PublishScheduler(session, options.pop("lease", lease), **options)
    return factory

@pytest.fixture
def seed(session, registry, contracts, world, stub):
    """Create a target for ``stub`` and ``count`` stations, each owing one delivery."""
    def factory(count=3, config=None):
        target = add_target(session, contracts, stub, config=config)
        for i in range(1, count + 1):
            world.station(i, f"Station {i}")
        BulkHashProcessor(session, registry).process_changed("weather_station")
        return target
    return factory

def tasks_of(session, target):
    return sorted(DeliveryTaskRepository(session).for_target(target.id), key=lambda task: task.id)

# ======================== TESTS ========================

class TestPublishRun:
    """Happy path and run-level behaviour."""

    def test_all_tasks_published(self, session, seed, stub, make_scheduler, lease, sleep):
        target = seed(3, config={"delay_ms": 5})
        report = make_scheduler().run()

        stats = report.targets["stub"]
        assert stats.published == 3
        assert stats.completed is True
        assert report.published == 3
        assert len(stub.delivered) == 3
        assert sleep.calls == [0.005, 0.005, 0.005]
        assert (lease.acquired, lease.released, lease.held) == (1, 1, False)

        hashes = HashRecordRepository(session)
        for task in tasks_of(session, target):
            assert task.status == DeliveryStatus.PUBLISHED.value
            assert task.attempts == 1
            assert task.delivered_hash == hashes.get_by_id(task.hash_id).composite_hash

    def test_busy_lease_skips_run(self, seed, stub, make_scheduler):
        seed(2)
        report = make_scheduler(lease=InMemoryLease(busy=True)).run()

        assert report.skipped is True
        assert report.targets == {}
        assert stub.calls == []

    def test_payload_carries_attributes(self, seed, stub, make_scheduler):
        seed(1)
        make_scheduler().run()

        assert stub.delivered[0]["entity_type"] == "weather_station"
        assert stub.delivered[0]["attributes"]["name"] == "Station 1"

    def test_should_publish_false_marks_published_without_sending(self, session, seed, stub, make_scheduler, sleep):
        target = seed(2)
        stub.publish_filter = lambda entity: entity.entity_id != "1"

        stats = make_scheduler().run().targets["stub"]

        assert stats.published == 2
        assert stats.skipped == 1
        assert stub.calls == ["2"]
        assert len(sleep.calls) == 1
        assert all(task.status == DeliveryStatus.PUBLISHED.value for task in tasks_of(session, target))

    def test_batch_size_and_single_followup(self, seed, make_scheduler, rescheduled):
        seed(3, config={"batch_size": 2})
        report = make_scheduler().run()

        assert report.targets["stub"].processed == 2
        assert report.rescheduled is True
        assert rescheduled == [10]

        report = make_scheduler().run()
        assert report.targets["stub"].processed == 1
        assert report.rescheduled is False
        assert rescheduled == [10]

    def test_timeout_stops_cleanly(self, session, seed, make_scheduler, rescheduled):
        target = seed(3)
        report = make_scheduler(monotonic=SteppingMonotonic(step=25)).run()

        assert report.timed_out is True
        assert report.targets["stub"].processed == 1
        assert report.rescheduled is False
        statuses = [task.status for task in tasks_of(session, target)]
        assert statuses.count(DeliveryStatus.PENDING.value) == 2

    def test_stale_dispatched_tasks_are_reset(self, session, seed, make_scheduler):
        target = seed(1)
        task = tasks_of(session, target)[0]
        session.execute(
            update(DeliveryTask)
            .where(DeliveryTask.id == task.id)
            .values(status=DeliveryStatus.DISPATCHED.value, attempts=1, updated_at=datetime(2024, 12, 31))
            .execution_options(synchronize_session=False)
        )
        session.commit()

        report = make_scheduler().run()

        assert report.reset_stale == 1
        assert report.targets["stub"].published == 1
        session.refresh(task)
        assert task.attempts == 2

    def test_unknown_contract_is_reported(self, session, registry, make_scheduler, world):
        DeliveryTargetRepository(session).create("ghost", "weather_station", "missing-contract")
        session.commit()
        world.station(1, "North")
        BulkHashProcessor(session, registry).process_changed("weather_station")

        stats = make_scheduler().run().targets["ghost"]

        assert stats.stopped_reason == "misconfigured"
        assert stats.processed == 0

    def test_inactive_target_is_ignored(self, session, seed, stub, make_scheduler):
        target = seed(1)
        DeliveryTargetRepository(session).set_status(target, TargetStatus.INACTIVE)
        session.commit()

        assert make_scheduler().run().targets == {}
        assert stub.calls == []

    def test_lost_lease_stops_dispatching(self, seed, stub, make_scheduler, lease, rescheduled):
        seed(2)
        lease.renew = Mock(return_value=False)

        report = make_scheduler().run()

        assert report.lease_lost is True
        assert report.to_dict()["lease_lost"] is True
        assert report.targets == {}
        assert stub.calls == []
        assert rescheduled == []
        assert (lease.held, lease.released) == (False, 1)

    def test_lease_released_when_run_crashes(self, seed, make_scheduler, lease, rescheduled):
        seed(1)
        scheduler = make_scheduler()
        scheduler.process_task = Mock(side_effect=RuntimeError("worker crashed"))

        with pytest.raises(RuntimeError):
            scheduler.run()

        assert lease.held is False
        assert lease.released == 1
        assert rescheduled == []

class TestFailureHandling:
    """Retries, error kinds and the circuit breaker."""

    def test_false_defers_with_data_kind(self, session, seed, stub, make_scheduler, clock):
        target = seed(1)
        stub.script = [False]

        stats = make_scheduler().run().targets["stub"]
        task = tasks_of(session, target)[0]

        assert stats.deferred == 1
        assert task.status == DeliveryStatus.DEFERRED.value
        assert task.error_kind == ErrorKind.DATA.value
        assert task.next_attempt_at == clock() + timedelta(seconds=30)

        assert make_scheduler().run().targets == {}

        clock.advance(30)
        make_scheduler().run()
        session.refresh(task)
        assert task.status == DeliveryStatus.PUBLISHED.value
        assert task.attempts == 2

    def test_retry_schedule_then_failure(self, session, seed, stub, make_scheduler, clock):
        target = seed(1, config={
            "retry_intervals": {"1": 30, "2": 300, "3": 1800},
            "max_infrastructure_errors": 0,
        })
        stub.script = [DeliveryInfrastructureError("upstream down", response_code=503)] * 4
        task = tasks_of(session, target)[0]

        waits = []
        for _ in range(3):
            make_scheduler().run()
            session.refresh(task)
            assert task.status == DeliveryStatus.DEFERRED.value
            wait = (task.next_attempt_at - clock()).total_seconds()
            waits.append(wait)
            clock.advance(wait)

        make_scheduler().run()
        session.refresh(task)

        assert waits == [30, 300, 1800]
        assert task.status == DeliveryStatus.FAILED.value
        assert task.attempts == 4
        assert task.last_response_code == 503
        assert task.error_kind == ErrorKind.INFRASTRUCTURE.value

    def test_validation_error_fails_without_retry(self, session, seed, stub, make_scheduler):
        target = seed(1)
        stub.script = [DeliveryValidationError("name is invalid", response_code=422)]

        stats = make_scheduler().run().targets["stub"]
        task = tasks_of(session, target)[0]

        assert stats.failed == 1
        assert stats.validation_errors == 1
        assert task.status == DeliveryStatus.FAILED.value
        assert task.error_kind == ErrorKind.VALIDATION.value
        assert "name is invalid" in task.last_error

        requeued = DeliveryTaskSynchronizer(session).requeue_failed(target.id, ErrorKind.VALIDATION)
        session.refresh(task)
        assert requeued == 1
        assert (task.status, task.attempts, task.last_error) == (DeliveryStatus.PENDING.value, 0, None)

    def test_infrastructure_budget_trips_breaker(self, session, seed, stub, make_scheduler, rescheduled):
        target = seed(4)
        stub.script = [RuntimeError("connection reset"), RuntimeError("connection reset")]

        report = make_scheduler().run()
        stats = report.targets["stub"]

        assert stats.processed == 2
        assert stats.infrastructure_errors == 2
        assert stats.stopped_reason == "infrastructure_budget"
        assert stats.completed is False
        assert rescheduled == []
        statuses = [task.status for task in tasks_of(session, target)]
        assert statuses == [
            DeliveryStatus.DEFERRED.value,
            DeliveryStatus.DEFERRED.value,
            DeliveryStatus.PENDING.value,
            DeliveryStatus.PENDING.value,
        ]

    def test_unknown_errors_count_against_infrastructure(self, seed, stub, make_scheduler):
        seed(3, config={"max_infrastructure_errors": 1})
        stub.script = [RuntimeError("weird"), RuntimeError("weird")]

        stats = make_scheduler().run().targets["stub"]
        assert stats.infrastructure_errors == 2
        assert stats.stopped_reason == "infrastructure_budget"

    def test_validation_budget(self, seed, stub, make_scheduler):
        seed(4, config={"max_validation_errors": 2})
        stub.script = [DeliveryValidationError("bad")] * 3

        stats = make_scheduler().run().targets["stub"]
        assert stats.validation_errors == 3
        assert stats.stopped_reason == "validation_budget"
        assert stats.processed == 3

    def test_contract_can_stop_the_run(self, session, seed, stub, make_scheduler):
        target = seed(3)
        stub.dispositions = {PermissionError: Disposition.STOP_JOB}
        stub.script = [PermissionError("Permission denied: /var/log/out")]

        stats = make_scheduler().run().targets["stub"]

        assert stats.stopped_reason == Disposition.STOP_JOB.value
        assert stats.processed == 1
        assert tasks_of(session, target)[0].status == DeliveryStatus.DEFERRED.value

    def test_contract_can_fail_a_record(self, session, seed, stub, make_scheduler):
        target = seed(1)
        stub.dispositions = {KeyError: Disposition.FAIL_RECORD}
        stub.script = [KeyError("station_code")]

        make_scheduler().run()
        assert tasks_of(session, target)[0].status == DeliveryStatus.FAILED.value

    def test_broken_policy_defers(self, session, seed, stub, make_scheduler):
        target = seed(1)
        stub.classify_exception = Mock(side_effect=RuntimeError("policy bug"))
        stub.script = [RuntimeError("connection reset")]

        make_scheduler().run()
        assert tasks_of(session, target)[0].status == DeliveryStatus.DEFERRED.value

class TestSourceChanges:

    def test_deleted_entity_drops_task(self, session, seed, stub, world, make_scheduler):
        target = seed(2)
        world.remove(world.entities["weather_station"]["1"])

        stats = make_scheduler().run().targets["stub"]

        assert stats.dropped == 1
        assert stats.published == 1
        assert tasks_of(session, target)[0].status == DeliveryStatus.SOURCE_DELETED.value

    def test_tombstoned_record_drops_without_attempt(self, session, seed, stub, make_scheduler):
        target = seed(1)
        task = tasks_of(session, target)[0]
        hashes = HashRecordRepository(session)
        hashes.tombstone(hashes.get_by_id(task.hash_id))
        session.commit()

        make_scheduler().run()
        session.refresh(task)

        assert task.status == DeliveryStatus.SOURCE_DELETED.value
        assert task.attempts == 0
        assert stub.calls == []

    def test_source_error_is_handled_per_task(self, session, seed, stub, registry, make_scheduler, monkeypatch):
        target = seed(3)
        source = registry.get_source("weather_station")
        get_many = source.get_many

        def flaky_get_many(session, ids):
            if "1" in ids:
                raise RuntimeError("connection reset while loading entity")
            return get_many(session, ids)

        monkeypatch.setattr(source, "get_many", flaky_get_many)

        stats = make_scheduler().run().targets["stub"]

        assert stats.processed == 3
        assert stats.published == 2
        assert stats.infrastructure_errors == 1
        assert stub.calls == ["2", "3"]
        first = tasks_of(session, target)[0]
        assert first.status == DeliveryStatus.DEFERRED.value
        assert first.error_kind == ErrorKind.INFRASTRUCTURE.value
        assert "loading entity" in first.last_error

    def test_missing_hash_record_fails_as_data(self, session, contracts, stub, make_scheduler):
        target = add_target(session, contracts, stub)
        task = DeliveryTaskRepository(session).create(None, target.id)
        session.commit()

        make_scheduler().run()
        session.refresh(task)

        assert task.status == DeliveryStatus.FAILED.value
        assert task.error_kind == ErrorKind.DATA.value

class TestPublishNow:

    def test_single_task_delivery(self, session, seed, stub, make_scheduler):
        target = seed(2)
        task = tasks_of(session, target)[1]

        outcome = make_scheduler().publish_now(task.id)

        assert outcome == Success(task.id)
        assert stub.calls == ["2"]

    def test_refused_while_run_holds_lease(self, session, seed, make_scheduler):
        target = seed(1)
        task = tasks_of(session, target)[0]
        assert make_scheduler(lease=InMemoryLease(busy=True)).publish_now(task.id) is None

    def test_terminal_task_is_not_redelivered(self, session, seed, stub, make_scheduler):
        target = seed(1)
        make_scheduler().run()
        task = tasks_of(session, target)[0]

        assert make_scheduler().publish_now(task.id) is None
        assert len(stub.calls) == 1

    def test_dropped_outcome_for_deleted_entity(self, session, seed, world, make_scheduler):
        target = seed(1)
        world.remove(world.entities["weather_station"]["1"])
        task = tasks_of(session, target)[0]

        outcome = make_scheduler().publish_now(task.id)
        assert isinstance(outcome, Dropped)
