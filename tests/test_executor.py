"""Tests for change set execution, rollback and cleanup."""

import threading
import time

import pytest

from stackweaver.orchestrator import (
    ChangeAction,
    ChangeSetExecutor,
    DeletionPolicy,
    EntryStatus,
    ResourceOutcome,
    ResourceSpec,
    attr,
    ref,
)
from stackweaver.orchestrator.models import Interpolation, Reference
from stackweaver.state import RecordStatus
from stackweaver.utils.errors import OperationTimeoutError, ProviderError, StoreIOError

from .conftest import THING, Harness, thing


def three_tier():
    return [
        thing("A", 0, Value="base"),
        thing("B", 1, Value=attr("A", "Arn")),
        thing("C", 2, Value=Interpolation(("endpoint=", Reference("B", "Endpoint")))),
    ]


def position(calls, call):
    return calls.index(call)


class TestForwardApply:
    def test_create_resolves_references(self, harness):
        result = harness.apply(three_tier())

        assert result.success
        assert result.get_summary() == {"created": 3}
        state = harness.store.load("demo")
        a, b, c = (state.get_record(n) for n in "ABC")
        assert b.resolved_properties["Value"] == a.attributes["Arn"]
        assert c.resolved_properties["Value"] == f"endpoint={b.attributes['Endpoint']}"
        assert b.properties["Value"] == {"Fn::GetAtt": ["A", "Arn"]}
        assert b.dependencies == ["A"]
        assert all(r.status == RecordStatus.CREATED for r in state.records.values())

    def test_dependencies_start_after_their_dependencies(self, harness):
        harness.apply(three_tier())

        calls = harness.provider.calls
        assert position(calls, ("create", "A")) < position(calls, ("create", "B"))
        assert position(calls, ("create", "B")) < position(calls, ("create", "C"))

    def test_operations_are_logged_in_order(self, harness):
        result = harness.apply(three_tier())

        assert [op.sequence for op in result.operations] == [1, 2, 3]
        assert [op.logical_name for op in result.operations] == ["A", "B", "C"]
        assert all(op.phase == "forward" and op.succeeded for op in result.operations)

    def test_reapply_makes_no_provider_calls(self, harness):
        harness.apply(three_tier())
        calls_before = list(harness.provider.calls)

        result = harness.apply(three_tier())

        assert result.success
        assert harness.provider.calls == calls_before
        assert result.get_summary() == {"unchanged": 3}

    def test_update_in_place(self, harness):
        harness.apply([thing("A", 0, Value="one")])
        physical_id = harness.store.load("demo").get_record("A").physical_id

        result = harness.apply([thing("A", 0, Value="two")])

        assert result.outcome("A") == ResourceOutcome.UPDATED
        record = harness.store.load("demo").get_record("A")
        assert record.physical_id == physical_id
        assert harness.provider.resources[physical_id]["properties"] == {"Value": "two"}

    def test_outputs_resolved_after_apply(self, harness):
        result = harness.apply(three_tier(), outputs={"CArn": attr("C", "Arn"), "Name": "site"})

        record = harness.store.load("demo").get_record("C")
        assert result.outputs == {"CArn": record.attributes["Arn"], "Name": "site"}
        assert harness.store.load("demo").outputs == result.outputs

    def test_skipped_by_condition_outcome(self, harness):
        result = harness.apply([thing("A", 0)], excluded=["Optional"])

        assert result.success
        assert result.outcome("Optional") == ResourceOutcome.SKIPPED_BY_CONDITION

    def test_retryable_error_is_retried(self, harness):
        harness.provider.inject_failure(
            "create", "A", ProviderError("Throttling", retryable=True), times=2
        )

        result = harness.apply([thing("A", 0)])

        assert result.success
        assert harness.provider.calls.count(("create", "A")) == 3
        assert [op.succeeded for op in result.operations] == [False, False, True]

    def test_failed_record_is_updated_in_place(self, harness):
        harness.apply([thing("A", 0, Value="one")])
        state = harness.store.load("demo")
        physical_id = state.get_record("A").physical_id
        state.get_record("A").status = RecordStatus.FAILED
        harness.store.save(state)

        result = harness.apply([thing("A", 0, Value="one")])

        assert result.success
        assert harness.provider.calls[-1] == ("update", "A")
        assert harness.store.load("demo").get_record("A").physical_id == physical_id
        assert harness.store.load("demo").get_record("A").status == RecordStatus.CREATED

    def test_same_rank_entries_run_concurrently_within_max_workers(
        self, registry, providers, store, fast_retry, monkeypatch
    ):
        harness = Harness(registry, providers, store, fast_retry)
        harness.executor.max_workers = 2
        provider = harness.provider
        create = provider.create
        lock = threading.Lock()
        active = []
        peak = [0]

        def slow_create(spec):
            with lock:
                active.append(spec.logical_name)
                peak[0] = max(peak[0], len(active))
            try:
                time.sleep(0.1)
                return create(spec)
            finally:
                with lock:
                    active.remove(spec.logical_name)

        monkeypatch.setattr(provider, "create", slow_create)

        result = harness.apply([thing(name, index) for index, name in enumerate("ABCD")])

        assert result.success
        assert result.get_summary() == {"created": 4}
        assert peak[0] == 2


class TestRollback:
    def test_failure_rolls_back_completed_creates(self, harness):
        harness.provider.inject_failure("create", "C")

        result = harness.apply(three_tier())

        assert not result.success
        assert result.rolled_back
        assert result.outcome("A") == ResourceOutcome.ROLLED_BACK
        assert result.outcome("B") == ResourceOutcome.ROLLED_BACK
        assert result.outcome("C") == ResourceOutcome.FAILED
        assert result.get_failed_resources() == ["C"]
        assert isinstance(result.error, ProviderError)
        assert harness.provider.resources == {}
        assert harness.store.load("demo").records == {}

        calls = harness.provider.calls
        assert position(calls, ("delete", "B")) < position(calls, ("delete", "A"))
        assert [op.phase for op in result.operations][-2:] == ["rollback", "rollback"]

    def test_independent_entries_not_started_after_failure(self, registry, providers, store,
                                                           fast_retry):
        harness = Harness(registry, providers, store, fast_retry)
        harness.executor.max_workers = 1
        harness.provider.inject_failure("create", "A")

        result = harness.apply([thing("A", 0), thing("B", 1)])

        assert result.outcome("A") == ResourceOutcome.FAILED
        assert result.outcome("B") == ResourceOutcome.NOT_STARTED
        assert result.results["B"].status == EntryStatus.PENDING
        assert ("create", "B") not in harness.provider.calls

    def test_retained_resource_is_orphaned_not_deleted(self, harness):
        cert = ResourceSpec("Cert", THING, deletion_policy=DeletionPolicy.RETAIN)
        harness.provider.inject_failure("create", "B")

        result = harness.apply([cert, ResourceSpec("B", THING, depends_on=("Cert",),
                                                   declaration_index=1)])

        assert result.outcome("Cert") == ResourceOutcome.ORPHANED
        assert "Retain" in result.results["Cert"].detail
        record = harness.store.load("demo").get_record("Cert")
        assert record is not None
        assert harness.provider.exists(record.physical_id)
        assert ("delete", "Cert") not in harness.provider.calls

    def test_failed_update_restores_previous_properties(self, harness):
        harness.apply([thing("A", 0, Value="one"), thing("B", 1, Value="one")])
        state = harness.store.load("demo")
        a_id = state.get_record("A").physical_id
        harness.provider.inject_failure("update", "B")

        result = harness.apply([thing("A", 0, Value="two"), thing("B", 1, Value="two")])

        assert result.outcome("A") == ResourceOutcome.ROLLED_BACK
        assert result.outcome("B") == ResourceOutcome.FAILED
        assert harness.provider.resources[a_id]["properties"] == {"Value": "one"}
        state = harness.store.load("demo")
        assert state.get_record("A").resolved_properties == {"Value": "one"}
        assert state.get_record("B").status == RecordStatus.FAILED

    def test_rollback_failure_is_reported(self, harness):
        harness.provider.inject_failure("create", "B")
        harness.provider.inject_failure("delete", "A")

        result = harness.apply([thing("A", 0), ResourceSpec("B", THING, depends_on=("A",),
                                                             declaration_index=1)])

        assert result.outcome("A") == ResourceOutcome.FAILED
        assert result.results["A"].detail == "rollback failed"
        assert harness.store.load("demo").get_record("A").status == RecordStatus.FAILED


class TestReplace:
    def test_create_before_delete(self, harness):
        harness.apply([thing("A", 0, Name="one"), thing("B", 1, Value=ref("A"))])
        old_id = harness.store.load("demo").get_record("A").physical_id

        result = harness.apply([thing("A", 0, Name="two"), thing("B", 1, Value=ref("A"))])

        assert result.success
        assert result.outcome("A") == ResourceOutcome.REPLACED
        assert result.outcome("B") == ResourceOutcome.UPDATED
        state = harness.store.load("demo")
        new_id = state.get_record("A").physical_id
        assert new_id != old_id
        assert state.get_record("B").resolved_properties == {"Value": new_id}
        assert not harness.provider.exists(old_id)

        calls = harness.provider.calls
        create_a = len(calls) - 1 - calls[::-1].index(("create", "A"))
        assert create_a < position(calls, ("update", "B")) < position(calls, ("delete", "A"))

    def test_failed_replacement_keeps_old_resource(self, harness):
        harness.apply([thing("A", 0, Name="one"), thing("B", 1, Value=ref("A"))])
        old_id = harness.store.load("demo").get_record("A").physical_id
        harness.provider.inject_failure("update", "B")

        result = harness.apply([thing("A", 0, Name="two"), thing("B", 1, Value=ref("A"))])

        assert not result.success
        assert result.outcome("A") == ResourceOutcome.ROLLED_BACK
        state = harness.store.load("demo")
        assert state.get_record("A").physical_id == old_id
        assert list(harness.provider.resources) == [
            old_id, state.get_record("B").physical_id
        ]

    def test_failed_delete_of_old_resource_is_retried_next_apply(self, harness):
        harness.apply([thing("A", 0, Name="one")])
        old_id = harness.store.load("demo").get_record("A").physical_id
        harness.provider.inject_failure("delete", "A", times=1)

        result = harness.apply([thing("A", 0, Name="two")])

        assert not result.success
        assert result.outcome("A") == ResourceOutcome.FAILED
        assert "retried on next apply" in result.results["A"].detail
        record = harness.store.load("demo").get_record("A")
        assert record.status == RecordStatus.CREATED
        assert [p.physical_id for p in record.pending_deletes] == [old_id]
        assert harness.provider.exists(old_id)

        calls_before = len(harness.provider.calls)
        result = harness.apply([thing("A", 0, Name="two")])

        assert result.success
        assert harness.provider.calls[calls_before:] == [("delete", "A")]
        assert not harness.provider.exists(old_id)
        assert harness.store.load("demo").get_record("A").pending_deletes == []
        assert not harness.plan([thing("A", 0, Name="two")]).has_changes()

    def test_destroy_deletes_pending_old_resource(self, harness):
        harness.apply([thing("A", 0, Name="one")])
        old_id = harness.store.load("demo").get_record("A").physical_id
        harness.provider.inject_failure("delete", "A", times=1)
        harness.apply([thing("A", 0, Name="two")])

        result = harness.destroy()

        assert result.success
        assert result.outcome("A") == ResourceOutcome.DELETED
        assert not harness.provider.exists(old_id)
        assert harness.provider.resources == {}
        assert harness.store.load("demo").records == {}


class TestCleanup:
    def test_removed_resources_deleted_dependents_first(self, harness):
        harness.apply(three_tier())

        result = harness.apply([thing("Other", 0)])

        assert result.success
        assert result.outcome("Other") == ResourceOutcome.CREATED
        assert [result.outcome(n) for n in "ABC"] == [ResourceOutcome.DELETED] * 3
        calls = harness.provider.calls
        assert position(calls, ("delete", "C")) < position(calls, ("delete", "B"))
        assert position(calls, ("delete", "B")) < position(calls, ("delete", "A"))
        assert set(harness.store.load("demo").records) == {"Other"}

    def test_cleanup_failure_is_not_rolled_back(self, harness):
        harness.apply([thing("A", 0), thing("B", 1)])
        harness.provider.inject_failure("delete", "B")

        result = harness.apply([thing("A", 0)])

        assert not result.success
        assert not result.rolled_back
        assert result.outcome("B") == ResourceOutcome.FAILED
        record = harness.store.load("demo").get_record("B")
        assert record.status == RecordStatus.FAILED
        assert harness.plan([thing("A", 0)]).get_entry("B").action == ChangeAction.DELETE

    def test_destroy_retained_resource_detaches_it(self, harness):
        cert = ResourceSpec("Cert", THING, deletion_policy=DeletionPolicy.RETAIN)
        harness.apply([cert, thing("Site", 1)])
        cert_id = harness.store.load("demo").get_record("Cert").physical_id

        result = harness.destroy()

        assert result.success
        assert result.outcome("Cert") == ResourceOutcome.RETAINED
        assert result.outcome("Site") == ResourceOutcome.DELETED
        assert harness.provider.exists(cert_id)
        assert harness.store.load("demo").records == {}
        assert harness.store.load("demo").outputs == {}

    def test_resource_already_gone_counts_as_deleted(self, harness):
        harness.apply([thing("A", 0)])
        harness.provider.resources.clear()

        result = harness.destroy()

        assert result.success
        assert result.outcome("A") == ResourceOutcome.DELETED


class TestDeadlinesAndCancellation:
    def test_timeout_fails_entry_and_late_success_is_compensated(self, registry, providers,
                                                                 store, fast_retry):
        harness = Harness(registry, providers, store, fast_retry, operation_timeout=0.2)
        harness.provider.inject_delay("create", "B", 0.6)

        result = harness.apply([thing("A", 0), ResourceSpec("B", THING, depends_on=("A",),
                                                             declaration_index=1)])

        assert not result.success
        assert isinstance(result.results["B"].error, OperationTimeoutError)
        assert result.outcome("B") == ResourceOutcome.FAILED
        assert result.outcome("A") == ResourceOutcome.ROLLED_BACK
        assert ("delete", "B") in harness.provider.calls
        assert harness.provider.resources == {}
        assert store.load("demo").records == {}

    def test_cancel_before_start(self, harness):
        event = threading.Event()
        event.set()

        result = harness.apply(three_tier(), cancel_event=event)

        assert result.cancelled
        assert not result.success
        assert harness.provider.calls == []
        assert set(result.get_summary()) == {"not-started"}

    def test_cancel_in_flight_drains_then_rolls_back(self, harness):
        harness.provider.inject_delay("create", "A", 0.3)
        event = threading.Event()
        timer = threading.Timer(0.1, event.set)
        timer.start()
        try:
            result = harness.apply(three_tier(), cancel_event=event)
        finally:
            timer.cancel()

        assert result.cancelled
        assert result.outcome("A") == ResourceOutcome.ROLLED_BACK
        assert result.outcome("B") == ResourceOutcome.NOT_STARTED
        assert harness.provider.resources == {}


class TestStoreFailures:
    def test_save_failure_stops_dispatch_and_raises(self, harness, monkeypatch):
        def fail_save(state):
            raise StoreIOError("disk full")

        monkeypatch.setattr(harness.store, "save", fail_save)

        with pytest.raises(StoreIOError, match="disk full") as exc_info:
            harness.apply(three_tier())

        assert ("create", "A") in harness.provider.calls
        assert ("create", "C") not in harness.provider.calls
        assert "saving state after rollback also failed" in str(exc_info.value)

    def test_state_saved_after_rollback_following_a_failed_save(self, harness, monkeypatch):
        save = harness.store.save
        attempts = []

        def flaky_save(state):
            attempts.append(state.stack_name)
            if len(attempts) == 2:
                raise StoreIOError("disk full")
            save(state)

        monkeypatch.setattr(harness.store, "save", flaky_save)

        with pytest.raises(StoreIOError, match="disk full") as exc_info:
            harness.apply(three_tier())

        assert "also failed" not in str(exc_info.value)
        assert ("delete", "A") in harness.provider.calls
        assert harness.provider.resources == {}
        assert harness.store.load("demo").records == {}
        monkeypatch.undo()
        change_set = harness.plan(three_tier())
        assert [e.action for e in change_set.entries] == [ChangeAction.CREATE] * 3


def test_default_worker_count(providers, store):
    executor = ChangeSetExecutor(providers, store)
    assert executor.max_workers >= 1
