from __future__ import annotations

from civiccal import scheduler
from civiccal.config import settings
from civiccal.errors import StoreUnavailable

from conftest import event_form


def test_prune_job_forgets_idle_identifiers(lifecycle, resident, clock):
    lifecycle.submit(event_form(), resident)
    clock.advance(61)
    assert scheduler.prune_rate_limiter(lifecycle) == 1
    assert len(lifecycle.state.rate_limiter) == 0


def test_reconcile_job_replays_queued_events(store, make_lifecycle, admin):
    class Outage:
        def __init__(self, inner):
            self.inner = inner
            self.down = True
            self.feed = inner.feed

        def create(self, data):
            if self.down:
                raise StoreUnavailable()
            return self.inner.create(data)

        def get_approved(self):
            return self.inner.get_approved()

    outage = Outage(store)
    lifecycle = make_lifecycle(outage, policy="queue")
    event = lifecycle.submit(event_form(), admin).value

    assert scheduler.reconcile_local_state(lifecycle) == 0
    outage.down = False
    assert scheduler.reconcile_local_state(lifecycle) == 1
    assert store.get(event.id).status == "approved"


def test_start_and_stop_scheduler(lifecycle):
    started = scheduler.start_scheduler(lifecycle)
    try:
        assert started.running
        assert {job.id for job in started.get_jobs()} == {"rate-limit-prune", "reconcile"}
        assert started.get_job("reconcile").trigger.interval == settings.reconcile_interval
        assert (
            started.get_job("rate-limit-prune").trigger.interval
            == settings.limiter_prune_interval
        )
        assert scheduler.start_scheduler(lifecycle) is started
    finally:
        scheduler.stop_scheduler()
    assert scheduler._scheduler is None
