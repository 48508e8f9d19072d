"""
jobflow CLI - operator commands for the job workflow core.

Usage:
    jobflow [--db PATH] sweep [--loop] [--interval SECONDS] [--json]
    jobflow [--db PATH] job show JOB_ID [--json]
    jobflow [--db PATH] job history JOB_ID [--json]
    jobflow [--db PATH] commissions [--contractor ID] [--status STATUS] [--json]
    jobflow [--db PATH] credits show CONTRACTOR_ID [--json]
    jobflow [--db PATH] credits replenish [--contractor ID]
"""

import argparse
import json
import logging
import sys

from jobflow.commerce.config import CommerceConfig
from jobflow.commerce.credits.models import CommissionStatus
from jobflow.commerce.errors import WorkflowError
from jobflow.services import Services, sqlite_services

# Set up logging
logging.basicConfig(level=logging.WARNING, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _pence(amount) -> str:
    if amount is None:
        return "-"
    return f"£{amount // 100:,}.{amount % 100:02d}"


def cmd_sweep(args, services: Services):
    """Run the timer sweep once, or forever with --loop."""
    if args.loop:
        try:
            services.sweeper.run_forever(args.interval)
        except KeyboardInterrupt:
            print("Stopped.")
        return 0

    report = services.sweeper.run_once()
    if args.json:
        _print_json(report.to_dict())
    else:
        print(f"Events delivered:       {report.events_delivered}")
        print(f"Timeouts escalated:     {report.timeouts_escalated}")
        print(f"Already resolved:       {report.timeouts_already_resolved}")
        print(f"Commissions overdue:    {report.commissions_overdue}")
        print(f"Accounts replenished:   {report.accounts_replenished}")
        for failure in report.failures:
            print(f"  ! {failure}")
    return 0 if report.ok else 1


def cmd_job(args, services: Services):
    """Handle job subcommands."""
    if args.job_action == "show":
        job = services.jobs.get_job(args.job_id)
        if args.json:
            _print_json(job.to_dict())
            return 0
        print(f"Job {job.id}  [{job.status}]  v{job.version}")
        print(f"  Title:      {job.title}")
        print(f"  Customer:   {job.customer_id}")
        print(f"  Size:       {job.job_size}   Location: {job.location}")
        print(f"  Contractor: {job.won_by_contractor_id or '-'}")
        print(f"  Proposed:   {_pence(job.contractor_proposed_amount)}")
        print(f"  Final:      {_pence(job.final_amount)}")
        if job.final_price_timeout_at:
            print(f"  Deadline:   {job.final_price_timeout_at.isoformat()}")
        commission = services.credits.commission_for_job(job.id)
        if commission:
            print(f"  Commission: {_pence(commission.total_amount)} [{commission.status}]")
        return 0

    if args.job_action == "history":
        transitions = services.jobs.history(args.job_id)
        if args.json:
            _print_json([t.to_dict() for t in transitions])
            return 0
        for t in transitions:
            when = t.created_at.isoformat() if t.created_at else "?"
            print(f"{when}  {t.from_status or '-':>34} -> {t.to_status:<34} {t.action} by {t.actor_id}")
        return 0

    return 1


def cmd_commissions(args, services: Services):
    """List commission payments."""
    status = CommissionStatus(args.status) if args.status else None
    commissions = services.credits.list_commissions(contractor_id=args.contractor, status=status)
    if args.json:
        _print_json([c.to_dict() for c in commissions])
        return 0
    if not commissions:
        print("No commissions.")
        return 0
    for c in commissions:
        print(
            f"{c.id}  job={c.job_id}  contractor={c.contractor_id}  "
            f"{_pence(c.total_amount)}  due {c.due_date.isoformat()}  [{c.status}]"
        )
    return 0


def cmd_credits(args, services: Services):
    """Handle credits subcommands."""
    if args.credits_action == "show":
        account = services.credits.get_account(args.contractor_id)
        if args.json:
            _print_json(account.to_dict())
            return 0
        print(f"Contractor {account.contractor_id}")
        print(f"  Balance:    {account.credits_balance}")
        print(f"  Trial:      {'available' if account.has_trial_credit else 'used'}")
        print(f"  Subscribed: {account.is_subscribed} (weekly limit {account.weekly_credits_limit})")
        return 0

    if args.credits_action == "replenish":
        if args.contractor:
            tx = services.credits.replenish_weekly(args.contractor)
            print(f"Replenished {tx.amount} credits." if tx else "Nothing to replenish.")
        else:
            count = services.credits.replenish_all()
            print(f"Replenished {count} account(s).")
        return 0

    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="jobflow",
        description="Job lifecycle workflow and credit/commission accounting",
    )
    parser.add_argument("--db", help="SQLite database path (default: $JOBFLOW_HOME/jobflow.db)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log at INFO level")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # sweep
    p_sweep = subparsers.add_parser("sweep", help="Process expired deadlines")
    p_sweep.add_argument("--loop", action="store_true", help="Keep sweeping until interrupted")
    p_sweep.add_argument("--interval", type=float, default=60.0, help="Seconds between sweeps")
    p_sweep.add_argument("--json", "-j", action="store_true")

    # job
    p_job = subparsers.add_parser("job", help="Inspect jobs")
    job_sub = p_job.add_subparsers(dest="job_action", required=True)
    job_show = job_sub.add_parser("show", help="Show a job")
    job_show.add_argument("job_id")
    job_show.add_argument("--json", "-j", action="store_true")
    job_history = job_sub.add_parser("history", help="Show a job's transitions")
    job_history.add_argument("job_id")
    job_history.add_argument("--json", "-j", action="store_true")

    # commissions
    p_comm = subparsers.add_parser("commissions", help="List commission payments")
    p_comm.add_argument("--contractor", help="Filter by contractor ID")
    p_comm.add_argument("--status", choices=[s.value for s in CommissionStatus])
    p_comm.add_argument("--json", "-j", action="store_true")

    # credits
    p_credits = subparsers.add_parser("credits", help="Credit accounts")
    credits_sub = p_credits.add_subparsers(dest="credits_action", required=True)
    credits_show = credits_sub.add_parser("show", help="Show a credit account")
    credits_show.add_argument("contractor_id")
    credits_show.add_argument("--json", "-j", action="store_true")
    credits_rep = credits_sub.add_parser("replenish", help="Weekly replenishment")
    credits_rep.add_argument("--contractor", help="Only this contractor")

    return parser


COMMANDS = {
    "sweep": cmd_sweep,
    "job": cmd_job,
    "commissions": cmd_commissions,
    "credits": cmd_credits,
}


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        logging.getLogger("jobflow").setLevel(logging.INFO)

    try:
        services = sqlite_services(args.db, config=CommerceConfig.from_env())
    except (ValueError, OSError) as e:
        logger.error("Failed to open database: %s", e)
        return 1

    try:
        return COMMANDS[args.command](args, services)
    except WorkflowError as e:
        logger.error("%s: %s", e.code, e)
        return 1
    except ValueError as e:
        logger.error("Input validation error: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
