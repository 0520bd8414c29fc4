"""
Session tests: snapshot, plan, dump, attach and verify against in-memory servers
"""

import json
import threading

import pytest

from pg_snapshot_dumper.common import (
    EXIT_CANCELLED,
    EXIT_FAILURE,
    EXIT_OK,
    EXIT_PARTIAL_DUMP,
    EXIT_SNAPSHOT_FAILURE,
    EXIT_VERIFICATION_MISMATCH,
    Status,
)
from pg_snapshot_dumper.errors import (
    DatabaseConnectionError,
    DestinationNotEmptyError,
    DumpCancelledError,
    PartialDumpError,
    SequencingError,
    SlotExistsError,
    SnapshotExpiredError,
)
from pg_snapshot_dumper.orchestrator import Orchestrator
from pg_snapshot_dumper.replication_catchup import SubscriptionHandle
from tests.common import TEST_TABLE_NAME, make_settings
from tests.fixtures import wait_until


def make_orchestrator(source_connector, destination_connector, **overrides):
    settings = make_settings(**overrides)
    return Orchestrator(settings, source_connector=source_connector, destination_connector=destination_connector)


def assert_no_open_connections(*servers):
    for server in servers:
        assert server.open_connections() == [], f'{server.name} has open connections'


def test_full_session(source_server, destination_server, source_connector, destination_connector):
    orchestrator = make_orchestrator(source_connector, destination_connector, verify__enabled=True)

    report = orchestrator.run()

    assert report.status == Status.DONE, report.error
    assert report.success
    assert report.exit_code == EXIT_OK
    assert len(report.ranges) == 4
    assert report.dump.rows == 10000
    assert [r.rows for r in report.dump.results] == [2500, 2500, 2500, 2500]
    assert destination_server.rows(TEST_TABLE_NAME) == source_server.rows(TEST_TABLE_NAME)

    assert report.snapshot.slot_name in source_server.slots
    assert destination_server.subscriptions['snapshot_dump_sub']['slot_name'] == report.snapshot.slot_name
    assert report.source_fingerprint == report.destination_fingerprint
    assert report.source_fingerprint.row_count == 10000
    assert not report.verification_mismatch

    assert orchestrator.holder.is_closed
    assert_no_open_connections(source_server, destination_server)
    json.dumps(report.to_dict(), default=str)


def test_single_worker_session(source_server, destination_server, source_connector, destination_connector):
    report = make_orchestrator(source_connector, destination_connector, workers=1).run()

    assert report.exit_code == EXIT_OK
    assert len(report.ranges) == 1
    assert report.ranges[0].low is None and report.ranges[0].high is None
    assert len(destination_server.rows(TEST_TABLE_NAME)) == 10000


def test_writes_after_snapshot_reach_destination_only_through_subscription(
        source_server, destination_server, source_connector, destination_connector):
    source_server.after_slot_created = lambda: source_server.upsert(TEST_TABLE_NAME, (10001, 'late', 0))
    orchestrator = make_orchestrator(source_connector, destination_connector, verify__enabled=True)

    report = orchestrator.run()

    # the in-memory subscription never applies changes, so the late row is missing
    assert report.status == Status.DONE
    assert report.dump.rows == 10000
    assert 10001 not in {row[0] for row in destination_server.rows(TEST_TABLE_NAME)}
    assert report.verification_mismatch
    assert not report.success
    assert report.exit_code == EXIT_VERIFICATION_MISMATCH
    assert report.source_fingerprint.row_count == 10001
    assert report.destination_fingerprint.row_count == 10000


def test_partial_dump(source_server, destination_server, source_connector, destination_connector):
    destination_server.upsert(TEST_TABLE_NAME, (7500, 'conflict', 0))
    orchestrator = make_orchestrator(
        source_connector, destination_connector, dump__require_empty_destination=False,
    )

    report = orchestrator.run()

    assert report.status == Status.FAILED
    assert report.last_successful_status == Status.DUMPING
    assert isinstance(report.error, PartialDumpError)
    assert report.error.failed_ranges == [report.ranges[2]]
    assert report.exit_code == EXIT_PARTIAL_DUMP
    assert destination_server.subscriptions == {}
    assert orchestrator.holder.is_closed
    assert_no_open_connections(source_server, destination_server)


def test_destination_must_be_empty(source_server, destination_server, source_connector, destination_connector):
    destination_server.upsert(TEST_TABLE_NAME, (1, 'existing', 0))

    report = make_orchestrator(source_connector, destination_connector).run()

    assert isinstance(report.error, DestinationNotEmptyError)
    assert report.last_successful_status == Status.PLANNING
    assert report.exit_code == EXIT_FAILURE
    assert report.dump is None
    assert_no_open_connections(source_server, destination_server)


def test_slot_collision(source_server, destination_server, source_connector, destination_connector):
    source_server.slots['snapshot_dump_slot'] = '0/1'

    report = make_orchestrator(source_connector, destination_connector).run()

    assert report.status == Status.FAILED
    assert report.last_successful_status == Status.IDLE
    assert isinstance(report.error, SlotExistsError)
    assert report.exit_code == EXIT_SNAPSHOT_FAILURE
    assert destination_server.rows(TEST_TABLE_NAME) == []


def test_expired_snapshot_aborts_session(source_server, destination_server, source_connector,
                                         destination_connector):
    source_server.expire_snapshots = True

    report = make_orchestrator(source_connector, destination_connector).run()

    assert report.status == Status.FAILED
    assert isinstance(report.error, SnapshotExpiredError)
    assert report.exit_code == EXIT_SNAPSHOT_FAILURE
    assert destination_server.subscriptions == {}
    assert_no_open_connections(source_server, destination_server)


def test_drop_slot_on_failure(source_server, destination_server, source_connector, destination_connector):
    destination_server.upsert(TEST_TABLE_NAME, (1, 'existing', 0))

    report = make_orchestrator(
        source_connector, destination_connector, replication__drop_slot_on_failure=True,
    ).run()

    assert report.status == Status.FAILED
    assert source_server.slots == {}


def test_unreachable_source_keeps_report_when_dropping_slot(source_server, destination_server, source_connector,
                                                            destination_connector):
    source_server.after_slot_created = lambda: setattr(source_server, 'refuse_connections', True)

    report = make_orchestrator(
        source_connector, destination_connector, replication__drop_slot_on_failure=True,
    ).run()

    assert report.status == Status.FAILED
    assert report.last_successful_status == Status.PLANNING
    assert isinstance(report.error, DatabaseConnectionError)
    assert report.exit_code == EXIT_FAILURE
    # the slot could not be dropped and is left for the operator
    assert 'snapshot_dump_slot' in source_server.slots
    assert report.finished_at is not None


def test_empty_table_skips_dump(source_server, destination_server, source_connector, destination_connector):
    source_server.create_table(TEST_TABLE_NAME, ['id', 'name', 'amount'])
    orchestrator = make_orchestrator(source_connector, destination_connector, verify__enabled=True)

    report = orchestrator.run()

    assert report.status == Status.DONE
    assert report.exit_code == EXIT_OK
    assert report.dump is None
    assert report.ranges == []
    assert 'snapshot_dump_sub' in destination_server.subscriptions
    assert report.source_fingerprint.row_count == 0
    assert orchestrator.holder.is_closed


def test_cancel_during_dump(source_server, destination_server, source_connector, destination_connector):
    source_server.stream_gate = threading.Event()
    orchestrator = make_orchestrator(source_connector, destination_connector)

    reports = []
    thread = threading.Thread(target=lambda: reports.append(orchestrator.run()))
    thread.start()
    assert wait_until(lambda: source_server.streams_started == 4)

    orchestrator.cancel()
    thread.join(timeout=10)
    assert not thread.is_alive()

    report = reports[0]
    assert report.status == Status.FAILED
    assert isinstance(report.error, DumpCancelledError)
    assert report.exit_code == EXIT_CANCELLED
    assert destination_server.subscriptions == {}
    assert orchestrator.holder.is_closed
    assert_no_open_connections(source_server, destination_server)


def test_cancel_before_run(source_server, destination_server, source_connector, destination_connector):
    orchestrator = make_orchestrator(source_connector, destination_connector)
    orchestrator.cancel()

    report = orchestrator.run()

    assert report.exit_code == EXIT_CANCELLED
    assert report.last_successful_status == Status.SNAPSHOT_OPEN
    assert destination_server.rows(TEST_TABLE_NAME) == []
    assert_no_open_connections(source_server, destination_server)


def test_illegal_transitions(source_connector, destination_connector):
    orchestrator = make_orchestrator(source_connector, destination_connector)

    with pytest.raises(SequencingError):
        orchestrator.transition(Status.DUMPING)
    with pytest.raises(SequencingError):
        orchestrator.transition(Status.ATTACHING)

    orchestrator.transition(Status.SNAPSHOT_OPEN)
    orchestrator.transition(Status.FAILED)
    with pytest.raises(SequencingError):
        orchestrator.transition(Status.PLANNING)


def test_catchup_timeout_is_reported(monkeypatch, source_server, destination_server, source_connector,
                                     destination_connector):
    monkeypatch.setattr(SubscriptionHandle, 'POLL_INTERVAL', 0.01)
    destination_server.subscription_lsn = '0/0'
    orchestrator = make_orchestrator(
        source_connector, destination_connector, verify__enabled=True, verify__catchup_timeout=1,
    )

    report = orchestrator.run()

    assert report.status == Status.DONE
    assert report.catchup_timed_out
    assert not report.verification_mismatch
    assert report.source_fingerprint is None
    assert not report.success
    assert report.exit_code == EXIT_VERIFICATION_MISMATCH
    assert report.to_dict()['catchup_timed_out'] is True
    assert_no_open_connections(source_server, destination_server)


def test_cancel_during_catchup_wait(source_server, destination_server, source_connector, destination_connector):
    destination_server.subscription_lsn = '0/0'
    orchestrator = make_orchestrator(
        source_connector, destination_connector, verify__enabled=True, verify__catchup_timeout=600,
    )

    reports = []
    thread = threading.Thread(target=lambda: reports.append(orchestrator.run()))
    thread.start()
    assert wait_until(lambda: orchestrator.status == Status.VERIFYING)

    orchestrator.cancel()
    thread.join(timeout=10)
    assert not thread.is_alive()

    report = reports[0]
    assert report.status == Status.FAILED
    assert report.last_successful_status == Status.VERIFYING
    assert isinstance(report.error, DumpCancelledError)
    assert report.exit_code == EXIT_CANCELLED
    assert_no_open_connections(source_server, destination_server)
