"""
Queue a script job for the supervisor.

usage: python enqueue_job.py <script_path> [--args "..."] [--at TIME] [--name NAME]

TIME is any date/time dateutil understands; naive values are taken as UTC.
Without --at the job is due immediately.
"""
import argparse
import sys
from datetime import timezone

from dateutil import parser as date_parser
from sqlmodel import Session

from scheduler.models import ScheduledJob, init_db
from scheduler.utils import ensure_utc_aware


def parse_scheduled_at(value):
    """Parse a user supplied schedule time into an aware UTC datetime."""
    if not value:
        return None
    return ensure_utc_aware(date_parser.parse(value)).astimezone(timezone.utc)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Queue a script job for the supervisor.")
    parser.add_argument("script_path")
    parser.add_argument("--args", dest="script_args", default=None)
    parser.add_argument("--at", dest="scheduled_at", default=None)
    parser.add_argument("--name", default=None)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        scheduled_at = parse_scheduled_at(args.scheduled_at)
    except (ValueError, OverflowError) as e:
        print(f"Invalid --at value '{args.scheduled_at}': {e}", file=sys.stderr)
        sys.exit(2)

    engine = init_db()

    arguments = {"script_path": args.script_path}
    if args.script_args:
        arguments["args"] = args.script_args

    with Session(engine) as session:
        job = ScheduledJob.enqueue(
            session,
            name=args.name or args.script_path,
            handler="script",
            arguments=arguments,
            scheduled_at=scheduled_at,
        )
        print(f"Queued job {job.id} ('{job.name}') for {job.scheduled_at.isoformat()}")


if __name__ == "__main__":
    main()
