"""Tests for the timeout sweeper."""

import threading
from datetime import timedelta

from jobflow.commerce.clock import EventKind


class TestFinalPriceTimeouts:
    def test_escalates_once(self, services, awaiting_job, clock):
        clock.advance(timedelta(hours=49))

        report = services.sweeper.run_once()
        assert report.ok
        assert report.events_delivered == 1
        assert report.timeouts_escalated == 1
        assert services.jobs.get_job(awaiting_job.id).status == "DISPUTED"

        again = services.sweeper.run_once()
        assert again.events_delivered == 0
        assert again.timeouts_escalated == 0
        assert len(services.disputes.list_disputes(job_id=awaiting_job.id)) == 1

    def test_nothing_due_yet(self, services, awaiting_job, clock):
        clock.advance(timedelta(hours=47))
        report = services.sweeper.run_once()
        assert report.events_delivered == 0
        assert report.timeouts_escalated == 0
        assert services.jobs.get_job(awaiting_job.id).status == "AWAITING_FINAL_PRICE_CONFIRMATION"

    def test_lost_event_caught_by_stored_deadline(self, services, awaiting_job, clock):
        for event in clock.pending():
            clock.acknowledge(event.handle)
        clock.advance(timedelta(hours=49))

        report = services.sweeper.run_once()
        assert report.events_delivered == 0
        assert report.timeouts_escalated == 1

    def test_stale_event_counts_as_resolved(self, services, awaiting_job, customer, clock):
        services.jobs.confirm_final_price(awaiting_job.id, customer)
        clock.advance(timedelta(hours=49))

        report = services.sweeper.run_once()
        assert report.ok
        assert report.timeouts_already_resolved == 1
        assert report.timeouts_escalated == 0
        assert services.jobs.get_job(awaiting_job.id).status == "COMPLETED"


class TestCommissionsAndCredits:
    def test_marks_overdue_commission(self, services, awaiting_job, customer, clock):
        services.jobs.confirm_final_price(awaiting_job.id, customer)
        commission = services.credits.commission_for_job(awaiting_job.id)
        clock.advance(timedelta(hours=49))

        report = services.sweeper.run_once()
        assert report.commissions_overdue == 1
        assert services.credits.get_commission(commission.id).status == "OVERDUE"
        assert services.sweeper.run_once().commissions_overdue == 0

    def test_replenishes_subscribers(self, services):
        services.credits.open_account("con-s", is_subscribed=True)
        assert services.sweeper.run_once().accounts_replenished == 1
        assert services.sweeper.run_once().accounts_replenished == 0


class TestFailures:
    def test_failure_is_recorded_and_retried(self, services, awaiting_job, customer, clock, monkeypatch):
        services.jobs.confirm_final_price(awaiting_job.id, customer)
        clock.advance(timedelta(hours=49))

        def broken(commission_id, now=None):
            raise RuntimeError("ledger offline")

        monkeypatch.setattr(services.credits, "mark_overdue", broken)
        report = services.sweeper.run_once()
        assert not report.ok
        assert any("ledger offline" in f for f in report.failures)
        due = [e for e in clock.pending() if e.kind == EventKind.COMMISSION_DUE.value]
        assert len(due) == 1

        monkeypatch.undo()
        retry = services.sweeper.run_once()
        assert retry.ok
        assert retry.commissions_overdue == 1
        assert [e for e in clock.pending() if e.kind == EventKind.COMMISSION_DUE.value] == []

    def test_report_to_dict(self, services):
        data = services.sweeper.run_once().to_dict()
        assert data["failures"] == []
        assert set(data) >= {"started_at", "events_delivered", "timeouts_escalated"}


def test_run_forever_stops(services, monkeypatch):
    stop = threading.Event()
    calls = []

    def run_once(now=None):
        calls.append(now)
        stop.set()

    monkeypatch.setattr(services.sweeper, "run_once", run_once)
    services.sweeper.run_forever(0.01, stop=stop)
    assert len(calls) == 1
