import inspect
import threading

import pytest

from billing_sync.jobs.queue import RetryQueueStore
from billing_sync.jobs.reconciliation_task import ReconciliationTask

T0 = 1_700_000_000.0


def _task(payload, error="Clerk API PATCH returned 503", now=T0):
    return ReconciliationTask.from_failure(payload, error, now)


def test_enqueue_new_task_schedules_first_retry(payload_factory):
    store = RetryQueueStore()
    task, created = store.enqueue_or_update(_task(payload_factory()))
    assert created is True
    assert store.depth() == 1
    assert task.attempt_count == 1
    assert task.enqueued_at == T0
    assert task.next_attempt_at == T0 + 1


def test_identical_failure_merges_into_existing_task(payload_factory):
    store = RetryQueueStore()
    first, _ = store.enqueue_or_update(_task(payload_factory(premiumUser=True)))
    second, created = store.enqueue_or_update(
        _task(payload_factory(premiumUser=False, subscriptionStatus="past_due"), error="timeout", now=T0 + 5)
    )
    assert created is False
    assert store.depth() == 1
    assert second.id == first.id
    assert second.enqueued_at == T0
    assert second.attempt_count == 1
    assert second.last_error == "timeout"
    assert second.payload.target_state == {"premiumUser": False, "subscriptionStatus": "past_due"}
    # recomputed from the newer failure for the unchanged attempt count
    assert second.next_attempt_at == T0 + 5 + 1
    assert second.revision == first.revision + 1


def test_merge_fills_missing_identifiers(payload_factory):
    store = RetryQueueStore()
    store.enqueue_or_update(_task(payload_factory(customer_id=None)))
    merged, created = store.enqueue_or_update(_task(payload_factory(customer_id="cus_999")))
    assert created is False
    assert merged.payload.customer_id == "cus_999"


def test_later_event_kind_merges_into_pending_task(payload_factory):
    store = RetryQueueStore()
    first, _ = store.enqueue_or_update(_task(payload_factory(event_kind="customer.subscription.updated")))
    merged, created = store.enqueue_or_update(
        _task(
            payload_factory(event_kind="customer.subscription.deleted", premiumUser=False, subscriptionStatus="canceled"),
            now=T0 + 0.5,
        )
    )
    assert created is False
    assert store.depth() == 1
    assert merged.id == first.id
    assert merged.payload.event_kind == "customer.subscription.deleted"
    assert merged.payload.target_state == {"premiumUser": False, "subscriptionStatus": "canceled"}


def test_either_identifier_finds_pending_task(payload_factory):
    store = RetryQueueStore()
    task, _ = store.enqueue_or_update(_task(payload_factory("sub_123", customer_id="cus_123")))
    by_customer, created = store.enqueue_or_update(_task(payload_factory(None, customer_id="cus_123")))
    assert created is False
    assert by_customer.id == task.id
    _, created = store.enqueue_or_update(_task(payload_factory("sub_123", customer_id=None)))
    assert created is False
    assert store.depth() == 1


def test_payload_bridging_two_tasks_folds_them(payload_factory):
    store = RetryQueueStore()
    older, _ = store.enqueue_or_update(_task(payload_factory("sub_1", customer_id=None, premiumUser=True)))
    store.enqueue_or_update(_task(payload_factory(None, customer_id="cus_1", subscriptionStatus="past_due"), now=T0 + 1))
    assert store.depth() == 2

    merged, created = store.enqueue_or_update(_task(payload_factory("sub_1", customer_id="cus_1", seats=3), now=T0 + 2))
    assert created is False
    assert store.depth() == 1
    assert merged.id == older.id
    assert merged.payload.target_state == {"premiumUser": True, "subscriptionStatus": "past_due", "seats": 3}
    # both identifiers now point at the surviving task
    _, created = store.enqueue_or_update(_task(payload_factory(None, customer_id="cus_1"), now=T0 + 3))
    assert created is False
    assert store.depth() == 1


def test_fold_applied_overrides_pending_state(payload_factory):
    store = RetryQueueStore()
    task, _ = store.enqueue_or_update(_task(payload_factory(premiumUser=False, subscriptionStatus="past_due")))
    folded = store.fold_applied(payload_factory(premiumUser=True, subscriptionStatus="active"))
    assert folded.id == task.id
    assert folded.revision == task.revision + 1
    assert folded.attempt_count == task.attempt_count
    assert folded.next_attempt_at == task.next_attempt_at
    assert folded.payload.target_state == {"premiumUser": True, "subscriptionStatus": "active"}
    assert store.fold_applied(payload_factory("sub_other", customer_id=None)) is None
    assert store.depth() == 1


def test_customer_id_is_key_without_subscription(payload_factory):
    store = RetryQueueStore()
    store.enqueue_or_update(_task(payload_factory(subscription_id=None, customer_id="cus_1")))
    _, created = store.enqueue_or_update(_task(payload_factory(subscription_id=None, customer_id="cus_1")))
    assert created is False
    _, created = store.enqueue_or_update(_task(payload_factory(subscription_id=None, customer_id="cus_2")))
    assert created is True
    assert store.depth() == 2


def test_due_tasks_filters_and_orders_oldest_first(payload_factory):
    store = RetryQueueStore()
    late, _ = store.enqueue_or_update(_task(payload_factory("sub_b", customer_id=None), now=T0 + 2))
    early, _ = store.enqueue_or_update(_task(payload_factory("sub_a", customer_id=None), now=T0))
    not_due, _ = store.enqueue_or_update(_task(payload_factory("sub_c", customer_id=None), now=T0 + 10))

    due = store.due_tasks(T0 + 3)
    assert inspect.isgenerator(due)
    assert [t.id for t in due] == [early.id, late.id]
    assert list(store.due_tasks(T0 + 0.5)) == []
    assert not_due.id in [t.id for t in store.due_tasks(T0 + 11)]


def test_due_tasks_yields_copies(payload_factory):
    store = RetryQueueStore()
    task, _ = store.enqueue_or_update(_task(payload_factory()))
    copy = next(store.due_tasks(T0 + 1))
    copy.attempt_count = 99
    copy.payload.target_state["premiumUser"] = False
    stored = store.get(task.id)
    assert stored.attempt_count == 1
    assert stored.payload.target_state["premiumUser"] is True


def test_resolve_respects_revision(payload_factory):
    store = RetryQueueStore()
    task, _ = store.enqueue_or_update(_task(payload_factory()))
    store.enqueue_or_update(_task(payload_factory(), now=T0 + 1))
    assert store.resolve(task.id, task.revision) is False
    assert store.depth() == 1
    current = store.get(task.id)
    assert store.resolve(task.id, current.revision) is True
    assert store.depth() == 0


def test_reschedule_updates_attempt_metadata(payload_factory):
    store = RetryQueueStore()
    task, _ = store.enqueue_or_update(_task(payload_factory()))
    updated = store.reschedule(task.id, attempt_count=2, next_attempt_at=T0 + 4, last_error="429", failed_at=T0 + 1)
    assert updated.id == task.id
    assert updated.attempt_count == 2
    assert updated.next_attempt_at == T0 + 4
    assert updated.last_error == "429"
    with pytest.raises(ValueError):
        store.reschedule(task.id, attempt_count=1, next_attempt_at=T0 + 5, last_error="x", failed_at=T0 + 2)
    assert store.reschedule("missing", attempt_count=2, next_attempt_at=T0, last_error="x", failed_at=T0) is None


def test_remove_and_rekey_after_removal(payload_factory):
    store = RetryQueueStore()
    task, _ = store.enqueue_or_update(_task(payload_factory()))
    assert store.remove(task.id) is True
    assert store.remove(task.id) is False
    fresh, created = store.enqueue_or_update(_task(payload_factory()))
    assert created is True
    assert fresh.id != task.id


def test_snapshot_and_clear(payload_factory):
    store = RetryQueueStore()
    empty = store.snapshot()
    assert empty.total == 0
    assert empty.oldest_enqueued_at is None
    assert empty.next_attempt_at is None
    assert empty.by_attempt_count == {}

    a, _ = store.enqueue_or_update(_task(payload_factory("sub_a", customer_id=None), now=T0))
    store.enqueue_or_update(_task(payload_factory("sub_b", customer_id=None), now=T0 + 1))
    store.reschedule(a.id, attempt_count=2, next_attempt_at=T0 + 5, last_error="x", failed_at=T0 + 2)
    snap = store.snapshot()
    assert snap.total == 2
    assert snap.oldest_enqueued_at == T0
    assert snap.next_attempt_at == T0 + 2
    assert snap.by_attempt_count == {1: 1, 2: 1}

    assert store.clear() == 2
    assert store.depth() == 0
    assert store.clear() == 0


def test_concurrent_identical_enqueues_collapse(payload_factory):
    store = RetryQueueStore()
    barrier = threading.Barrier(20)

    def worker():
        barrier.wait()
        store.enqueue_or_update(_task(payload_factory()))

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert store.depth() == 1
    assert store.snapshot().by_attempt_count == {1: 1}
