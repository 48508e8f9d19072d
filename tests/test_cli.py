"""Tests for the jobflow CLI."""

import json

import pytest

from jobflow.cli.__main__ import build_parser, main
from jobflow.commerce.actors import Actor
from jobflow.commerce.jobs.models import JobSize
from jobflow.services import sqlite_services


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "cli.db"


@pytest.fixture
def seeded(db_path):
    """A completed credit-funded job and a subscribed contractor."""
    services = sqlite_services(db_path)
    customer = Actor.customer("cust-1")
    contractor = Actor.contractor("con-a")
    services.credits.open_account(contractor.id)
    services.credits.open_account("con-sub", is_subscribed=True, grant_trial=False)

    job = services.jobs.create_job(customer.id, "Tile bathroom", "NE1 4ST", "tiling", job_size=JobSize.SMALL)
    services.jobs.claim_win(job.id, contractor)
    services.jobs.confirm_winner(job.id, customer)
    services.jobs.propose_final_price(job.id, contractor, 120000)
    services.jobs.confirm_final_price(job.id, customer)
    return job


def run(db_path, *args):
    return main(["--db", str(db_path), *args])


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_job_show(db_path, seeded, capsys):
    assert run(db_path, "job", "show", seeded.id) == 0
    out = capsys.readouterr().out
    assert "[COMPLETED]" in out
    assert "£1,200.00" in out
    assert "£72.00 [PENDING]" in out


def test_job_show_json(db_path, seeded, capsys):
    assert run(db_path, "job", "show", seeded.id, "--json") == 0
    data = json.loads(capsys.readouterr().out)
    assert data["final_amount"] == 120000
    assert data["status"] == "COMPLETED"


def test_job_history_json(db_path, seeded, capsys):
    assert run(db_path, "job", "history", seeded.id, "--json") == 0
    actions = [t["action"] for t in json.loads(capsys.readouterr().out)]
    assert actions[0] == "create"
    assert "confirm_final_price" in actions


def test_unknown_job_fails(db_path, capsys):
    assert run(db_path, "job", "show", "missing") == 1


def test_commissions(db_path, seeded, capsys):
    assert run(db_path, "commissions", "--status", "PENDING", "--json") == 0
    commissions = json.loads(capsys.readouterr().out)
    assert len(commissions) == 1
    assert commissions[0]["total_amount"] == 7200

    assert run(db_path, "commissions", "--status", "PAID") == 0
    assert "No commissions." in capsys.readouterr().out


def test_credits_show(db_path, seeded, capsys):
    assert run(db_path, "credits", "show", "con-a") == 0
    out = capsys.readouterr().out
    assert "Trial:      used" in out


def test_credits_replenish(db_path, seeded, capsys):
    assert run(db_path, "credits", "replenish") == 0
    assert "Replenished 1 account(s)." in capsys.readouterr().out
    assert run(db_path, "credits", "replenish", "--contractor", "con-sub") == 0
    assert "Nothing to replenish." in capsys.readouterr().out


def test_sweep_json(db_path, seeded, capsys):
    assert run(db_path, "sweep", "--json") == 0
    report = json.loads(capsys.readouterr().out)
    assert report["timeouts_escalated"] == 0
    assert report["failures"] == []
