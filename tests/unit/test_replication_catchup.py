"""
Unit tests for attaching the subscription after the dump
"""

import threading
import time

import pytest

from pg_snapshot_dumper.common import RangeStatus
from pg_snapshot_dumper.config import ReplicationSettings
from pg_snapshot_dumper.dump_worker_pool import DumpProgress, WorkerResult
from pg_snapshot_dumper.errors import SequencingError, SubscriptionAttachError
from pg_snapshot_dumper.replication_catchup import ReplicationCatchup, SubscriptionHandle
from pg_snapshot_dumper.table_structure import Range


RANGES = [Range(index=0, high=10), Range(index=1, low=10, high=20), Range(index=2, low=20)]


def finish_all(progress, status=RangeStatus.SUCCEEDED):
    for key_range in RANGES:
        progress.finish(WorkerResult(range=key_range, status=status, success=status == RangeStatus.SUCCEEDED))


def make_catchup(source_connector, destination_connector, progress, **replication):
    return ReplicationCatchup(
        source_connector, destination_connector, ReplicationSettings(**replication), progress,
    )


def test_attach_before_planning_is_rejected(source_connector, destination_connector):
    catchup = make_catchup(source_connector, destination_connector, DumpProgress())
    with pytest.raises(SequencingError):
        catchup.attach('snapshot_dump_slot')


def test_attach_while_ranges_in_flight_is_rejected(destination_server, source_connector, destination_connector):
    progress = DumpProgress()
    progress.reset(RANGES)
    progress.mark_running(RANGES[0], worker_id=0)
    progress.finish(WorkerResult(range=RANGES[1], status=RangeStatus.SUCCEEDED, success=True))
    catchup = make_catchup(source_connector, destination_connector, progress)

    with pytest.raises(SequencingError) as exc_info:
        catchup.attach('snapshot_dump_slot')

    assert '#0' in str(exc_info.value)
    assert '#2' in str(exc_info.value)
    assert destination_server.subscriptions == {}


def test_attach_after_failed_range_is_rejected(destination_server, source_connector, destination_connector):
    progress = DumpProgress()
    progress.reset(RANGES)
    finish_all(progress, RangeStatus.FAILED)

    with pytest.raises(SequencingError):
        make_catchup(source_connector, destination_connector, progress).attach('snapshot_dump_slot')
    assert destination_server.subscriptions == {}


def test_attach_creates_subscription_on_existing_slot(destination_server, source_connector,
                                                      destination_connector):
    progress = DumpProgress()
    progress.reset(RANGES)
    finish_all(progress)
    catchup = make_catchup(source_connector, destination_connector, progress)

    handle = catchup.attach('snapshot_dump_slot')

    assert handle.name == 'snapshot_dump_sub'
    assert handle.slot_name == 'snapshot_dump_slot'
    assert destination_server.subscriptions['snapshot_dump_sub'] == {
        'conninfo': 'host=source dbname=test',
        'publication': 'snapshot_dump_pub',
        'slot_name': 'snapshot_dump_slot',
    }
    assert destination_server.open_connections() == []

    with pytest.raises(SequencingError):
        catchup.attach('snapshot_dump_slot')


def test_source_conninfo_override(destination_server, source_connector, destination_connector):
    progress = DumpProgress()
    progress.reset([])
    catchup = make_catchup(
        source_connector, destination_connector, progress, source_conninfo='host=pg-source port=5432',
    )
    catchup.attach('snapshot_dump_slot')
    assert destination_server.subscriptions['snapshot_dump_sub']['conninfo'] == 'host=pg-source port=5432'


def test_attach_error_is_reported(destination_server, source_connector, destination_connector):
    destination_server.subscriptions['snapshot_dump_sub'] = {}
    progress = DumpProgress()
    progress.reset([])

    with pytest.raises(SubscriptionAttachError):
        make_catchup(source_connector, destination_connector, progress).attach('snapshot_dump_slot')
    assert destination_server.open_connections() == []


def test_wait_caught_up(monkeypatch, destination_server, destination_connector):
    monkeypatch.setattr(SubscriptionHandle, 'POLL_INTERVAL', 0.01)
    destination_server.subscriptions['snapshot_dump_sub'] = {}
    handle = SubscriptionHandle(
        name='snapshot_dump_sub',
        slot_name='snapshot_dump_slot',
        publication_name='snapshot_dump_pub',
        destination_connector=destination_connector,
    )

    destination_server.subscription_lsn = '16/B374D848'
    assert handle.wait_caught_up('16/B374D848', timeout=1)
    assert handle.wait_caught_up('15/FFFFFFFF', timeout=1)
    assert not handle.wait_caught_up('17/0', timeout=0.05)


def test_wait_caught_up_stops_on_cancel(destination_server, destination_connector):
    destination_server.subscriptions['snapshot_dump_sub'] = {}
    destination_server.subscription_lsn = '0/0'
    handle = SubscriptionHandle(
        name='snapshot_dump_sub',
        slot_name='snapshot_dump_slot',
        publication_name='snapshot_dump_pub',
        destination_connector=destination_connector,
    )
    cancel_event = threading.Event()
    cancel_event.set()

    started = time.time()
    assert not handle.wait_caught_up('16/0', timeout=600, cancel_event=cancel_event)
    assert time.time() - started < 5
