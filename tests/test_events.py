"""
Event log tests.
"""

import threading

import pytest

from shadowswap.events import EventLog, IntentCreated, IntentFilled, Paused
from shadowswap.hardening import CustodyFailure


class TestEventLog:
    def test_append_assigns_sequence_numbers(self):
        log = EventLog()
        records = log.append([Paused(by="0x1"), Paused(by="0x2")])
        assert [r.sequence_number for r in records] == [1, 2]
        assert log.position == 2
        assert len(log) == 2

    def test_read_from_cursor(self):
        log = EventLog()
        log.append([Paused(by=str(i)) for i in range(5)])
        assert [r.event.by for r in log.read(3)] == ["3", "4"]
        assert [r.sequence_number for r in log.read(0, max_count=2)] == [1, 2]
        assert log.read(5) == []
        with pytest.raises(ValueError):
            log.read(-1)

    def test_subscribers_filter_by_type(self):
        log = EventLog()
        created, everything = [], []

        @log.subscribe(IntentCreated)
        def on_created(event):
            created.append(event)

        @log.subscribe()
        def on_any(event):
            everything.append(event)

        log.append([IntentCreated(intent_id="a"), IntentFilled(intent_id="a")])
        assert [e.event_type for e in created] == ["IntentCreated"]
        assert len(everything) == 2

        assert log.unsubscribe(on_any)
        assert not log.unsubscribe(on_any)

    def test_failing_subscriber_does_not_block_others(self):
        log = EventLog()
        seen = []

        @log.subscribe()
        def broken(event):
            raise RuntimeError("subscriber bug")

        @log.subscribe()
        def works(event):
            seen.append(event)

        log.append([Paused(by="0x1")])
        assert len(seen) == 1
        assert log.position == 1

    def test_digest_is_stable(self):
        event = IntentCreated(intent_id="a", commitment="b")
        assert event.digest() == event.digest()
        assert event.to_dict()["event_type"] == "IntentCreated"


class TestLedgerEvents:
    def test_events_committed_only_on_success(self, flow):
        start = flow.source.events.position
        with pytest.raises(CustodyFailure):
            flow.create(flow.FUNDS + 1)
        assert flow.source.events.position == start

        flow.create(1000)
        (record,) = flow.source.events.read(start)
        assert isinstance(record.event, IntentCreated)
        assert record.event.ledger_time == flow.clock.now()

    def test_transition_events_are_ordered(self, flow):
        params = flow.through_fill(1000)
        flow.sync_fills()
        flow.settle(params)
        kinds = [r.event.event_type for r in flow.source.events.read()]
        assert kinds[-3:] == ["IntentCreated", "RootSynced", "IntentSettled"]

    def test_subscribers_run_after_ledger_lock_is_released(self, flow):
        lock_free = []

        @flow.source.events.subscribe(IntentCreated)
        def on_created(event):
            outcome = []

            def try_lock():
                acquired = flow.source._lock.acquire(timeout=1)
                if acquired:
                    flow.source._lock.release()
                outcome.append(acquired)

            worker = threading.Thread(target=try_lock)
            worker.start()
            worker.join()
            lock_free.append(outcome[0])

        flow.create(1000)
        assert lock_free == [True]

    def test_subscriber_can_drive_the_other_ledger(self, flow):
        from shadowswap import intent_pool, settlement

        @flow.source.events.subscribe(IntentCreated)
        def forward_root(event):
            root = intent_pool.commitment_root(flow.source)
            settlement.sync_source_root(flow.destination, flow.RELAYER, flow.SOURCE_CHAIN, root)

        params = flow.create(1000)
        assert settlement.source_root(flow.destination, flow.SOURCE_CHAIN) == intent_pool.commitment_root(flow.source)
        flow.register(params)

    def test_commit_then_notify(self):
        log = EventLog()
        seen = []
        log.subscribe()(seen.append)
        records = log.commit([Paused(by="0x1")])
        assert log.position == 1 and seen == []
        log.notify(records)
        assert [e.by for e in seen] == ["0x1"]
