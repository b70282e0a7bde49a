#!/usr/bin/env python3
"""
Campus Vote database administration.

Usage:
    python plat_scripts/db_admin.py init-db
    python plat_scripts/db_admin.py check-tally [--election UUID]

Connection settings come from --dsn / DATABASE_URL, or the DB_* variables
used by the services.
"""

import asyncio
import sys
import uuid
from datetime import datetime

import asyncpg
import click
from colorama import Fore, Style, init

from campusvote import tally
from campusvote.database import Database, apply_schema
from campusvote.errors import VotingError
from campusvote.security import Role, Session

init()

# The tally audit runs as a synthetic administrator.
OPERATOR = Session(
    user_id=uuid.UUID(int=0),
    roles=frozenset({Role.STUDENT, Role.ADMINISTRATOR}),
)


# ═══════════════════════════════════════════════════════════════════════════
# Output
# ═══════════════════════════════════════════════════════════════════════════
LEVEL_COLORS = {
    "INFO": Fore.WHITE,
    "SUCCESS": Fore.GREEN,
    "WARNING": Fore.YELLOW,
    "ERROR": Fore.RED,
}


def log(level: str, message: str) -> None:
    ts = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    color = LEVEL_COLORS.get(level, "")
    click.echo(f"{color}[{ts}] [{level}]{Style.RESET_ALL} {message}")


async def _connect(dsn: str | None) -> asyncpg.Connection:
    if dsn:
        return await asyncpg.connect(dsn)
    return await Database.connect_dedicated()


# ═══════════════════════════════════════════════════════════════════════════
# Commands
# ═══════════════════════════════════════════════════════════════════════════
async def _init_db(dsn: str | None) -> None:
    conn = await _connect(dsn)
    try:
        await apply_schema(conn)
    finally:
        await conn.close()


async def _check_tally(dsn: str | None, election_id: uuid.UUID | None) -> list[dict]:
    conn = await _connect(dsn)
    try:
        if election_id is None:
            ids = [r["id"] for r in await conn.fetch("SELECT id FROM elections ORDER BY created_at")]
        else:
            ids = [election_id]
        return [await tally.check_tally_consistency(conn, OPERATOR, eid) for eid in ids]
    finally:
        await conn.close()


def _print_report(report: dict) -> None:
    level = "SUCCESS" if report["consistent"] else "ERROR"
    log(level, (
        f"Election {report['election_id']}: total={report['total_votes']} "
        f"lists={report['list_votes_sum']} ballots={report['ballots']} "
        f"simulated={report['simulated_votes']}"
    ))
    for row in report["lists"]:
        if not row["consistent"]:
            log("WARNING", (
                f"  list {row['name']} ({row['list_id']}): votes_count={row['votes_count']} "
                f"but ballots={row['ballots']} + simulated={row['simulated_votes']}"
            ))


@click.group()
@click.option("--dsn", envvar="DATABASE_URL", default=None, help="PostgreSQL DSN")
@click.pass_context
def cli(ctx, dsn):
    """Campus Vote database administration."""
    ctx.ensure_object(dict)
    ctx.obj["dsn"] = dsn


@cli.command("init-db")
@click.pass_context
def init_db(ctx):
    """Apply schema.sql (tables, constraints, triggers). Safe to re-run."""
    try:
        asyncio.run(_init_db(ctx.obj["dsn"]))
    except (OSError, asyncpg.PostgresError) as e:
        log("ERROR", f"Schema could not be applied: {e}")
        sys.exit(1)
    log("SUCCESS", "Schema applied")


@cli.command("check-tally")
@click.option("--election", "election_id", type=click.UUID, default=None,
              help="Check a single election (default: all)")
@click.pass_context
def check_tally(ctx, election_id):
    """Compare stored counters with the ballot log. Exits 1 on drift."""
    try:
        reports = asyncio.run(_check_tally(ctx.obj["dsn"], election_id))
    except (OSError, asyncpg.PostgresError, VotingError) as e:
        log("ERROR", f"Tally check failed: {e}")
        sys.exit(1)

    if not reports:
        log("INFO", "No elections found")
        return
    for report in reports:
        _print_report(report)

    drifted = [r for r in reports if not r["consistent"]]
    if drifted:
        log("ERROR", f"{len(drifted)} of {len(reports)} elections have inconsistent tallies")
        sys.exit(1)
    log("SUCCESS", f"All {len(reports)} elections consistent")


if __name__ == "__main__":
    cli()
