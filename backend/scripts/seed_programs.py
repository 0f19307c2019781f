#!/usr/bin/env python3
"""Seed the programs table with sample education programs.

Usage:
    python scripts/seed_programs.py --env dev
    python scripts/seed_programs.py --env dev --region ap-northeast-2
    python scripts/seed_programs.py --env dev --dry-run
"""

import argparse
import datetime as dt
import sys

import boto3

from coop_booking.models.enums import ProgramStatus
from coop_booking.models.program import Program

KST = dt.timezone(dt.timedelta(hours=9))


def get_table_name(env: str, table: str) -> str:
    return f"booking-{env}-{table}"


def sample_programs(today: dt.date) -> list[Program]:
    """Three programs: one with an open early-bird window, one without, one full."""

    def at(days: int, hour: int = 10) -> dt.datetime:
        day = today + dt.timedelta(days=days)
        return dt.datetime(day.year, day.month, day.day, hour, tzinfo=KST)

    return [
        Program(
            program_id="prog-coding-camp",
            title="Weekend Coding Camp",
            base_price=150_000,
            early_bird_price=120_000,
            early_bird_deadline=at(14, 0),
            max_participants=20,
            status=ProgramStatus.OPEN,
            start_date=at(30),
            end_date=at(31, 17),
            location="Community Center, Room 2",
            description="Two-day introduction to programming for teenagers.",
        ),
        Program(
            program_id="prog-parenting-101",
            title="Parenting Workshop",
            base_price=30_000,
            max_participants=15,
            status=ProgramStatus.OPEN,
            start_date=at(10, 19),
            end_date=at(10, 21),
            location="Cooperative Hall",
        ),
        Program(
            program_id="prog-forest-school",
            title="Forest School Day",
            base_price=50_000,
            max_participants=2,
            current_participants=2,
            status=ProgramStatus.FULL,
            start_date=at(5, 9),
            end_date=at(5, 16),
        ),
    ]


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed the programs table")
    parser.add_argument("--env", choices=["dev", "staging", "prod"], default="dev")
    parser.add_argument("--region", default=None, help="AWS region (default: from profile)")
    parser.add_argument("--dry-run", action="store_true", help="Print items without writing")
    args = parser.parse_args()

    if args.env == "prod":
        print("Refusing to seed sample programs into prod")
        return 1

    programs = sample_programs(dt.datetime.now(KST).date())
    table_name = get_table_name(args.env, "programs")

    if args.dry_run:
        for program in programs:
            print(program.to_item())
        return 0

    table = boto3.resource("dynamodb", region_name=args.region).Table(table_name)
    with table.batch_writer() as batch:
        for program in programs:
            batch.put_item(Item=program.to_item())
            print(f"  ✓ {program.program_id}: {program.title}")
    print(f"Seeded {len(programs)} programs into {table_name}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
