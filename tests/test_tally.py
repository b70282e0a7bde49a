import uuid

import pytest
from pydantic import ValidationError

from campusvote import notifications, tally
from campusvote.errors import (
    ElectionLocked, ElectionNotFound, InvalidList, InvalidRequest, ResultsUnavailable,
    Unauthorized,
)
from campusvote.lifecycle import ElectionStatus
from campusvote.schemas import MAX_COUNTER, SimulationRequest

from conftest import ELECTION_ID, LIST_A, LIST_B

LOCK = "FROM elections WHERE id = $1 FOR UPDATE"


def _election(total=0, eligible=None, status="voting_open", simulated=0):
    return {
        "id": ELECTION_ID, "title": "Student Council 2026", "status": status,
        "total_votes": total, "eligible_voters": eligible, "simulated_votes": simulated,
    }


def _list(list_id, votes, name=None, color=None):
    return {"id": list_id, "name": name or str(list_id)[-1], "color": color, "votes_count": votes}


# -- results arithmetic --------------------------------------------------------

def test_percentage():
    assert tally.percentage(1, 3) == 33.33
    assert tally.percentage(5, 0) == 0.0
    assert tally.percentage(5, None) == 0.0


def test_build_results_percentages_and_participation():
    results = tally.build_results(
        _election(total=40, eligible=200),
        [_list(LIST_A, 10), _list(LIST_B, 30)],
        [],
    )
    assert results["participation_rate"] == 20.0
    assert [r["list_id"] for r in results["lists"]] == [LIST_B, LIST_A]
    assert [r["percentage"] for r in results["lists"]] == [75.0, 25.0]
    assert results["status"] is ElectionStatus.VOTING_OPEN


def test_build_results_without_votes_or_eligible_voters():
    results = tally.build_results(_election(), [_list(LIST_A, 0)], [])
    assert results["participation_rate"] == 0.0
    assert results["lists"][0]["percentage"] == 0.0


def test_candidate_votes_are_an_even_split_rounded_down():
    candidates = [
        {"id": uuid.uuid4(), "list_id": LIST_A, "name": name} for name in ("Ana", "Ben", "Cy")
    ]
    results = tally.build_results(_election(total=10), [_list(LIST_A, 10)], candidates)
    shares = results["lists"][0]["candidates"]
    assert [c["votes"] for c in shares] == [3, 3, 3]
    assert all(c["approximate"] for c in shares)


async def test_results_unavailable_before_voting(conn, student):
    conn.on("fetchrow", "FROM elections WHERE id = $1", _election(status="campaign"))
    with pytest.raises(ResultsUnavailable):
        await tally.get_election_results(conn, student, ELECTION_ID)


async def test_results_read_from_one_snapshot(conn, student):
    conn.on("fetchrow", "FROM elections WHERE id = $1", _election(total=3, status="voting_closed"))
    conn.on("fetch", "FROM candidate_lists", [_list(LIST_A, 3)])
    results = await tally.get_election_results(conn, student, ELECTION_ID)
    assert results["total_votes"] == 3
    assert conn.transactions == [{"isolation": "repeatable_read", "readonly": True}]


async def test_results_missing_election(conn, student):
    with pytest.raises(ElectionNotFound):
        await tally.get_election_results(conn, student, ELECTION_ID)


# -- consistency audit ---------------------------------------------------------

def _tally_list(list_id, votes, ballots, simulated=0):
    return {
        "id": list_id, "name": str(list_id)[-1], "votes_count": votes,
        "ballots": ballots, "simulated_votes": simulated,
    }


def test_tally_report_consistent_with_simulated_votes():
    report = tally.build_tally_report(
        _election(total=15, simulated=5),
        [_tally_list(LIST_A, 8, 3, simulated=5), _tally_list(LIST_B, 7, 7)],
    )
    assert report["consistent"]
    assert report["ballots"] == 10
    assert report["list_votes_sum"] == 15


def test_tally_report_detects_list_drift():
    report = tally.build_tally_report(
        _election(total=5),
        [_tally_list(LIST_A, 5, 4)],
    )
    assert not report["consistent"]
    assert not report["lists"][0]["consistent"]


def test_tally_report_detects_total_drift():
    report = tally.build_tally_report(_election(total=6), [_tally_list(LIST_A, 5, 5)])
    assert report["lists"][0]["consistent"]
    assert not report["consistent"]


async def test_students_cannot_run_the_tally_audit(conn, student):
    with pytest.raises(Unauthorized):
        await tally.check_tally_consistency(conn, student, ELECTION_ID)


async def test_committee_runs_the_tally_audit(conn, committee):
    conn.on("fetchrow", "FROM elections WHERE id = $1", _election(total=2))
    conn.on("fetch", "FROM candidate_lists l", [_tally_list(LIST_A, 2, 2)])
    report = await tally.check_tally_consistency(conn, committee, ELECTION_ID)
    assert report["consistent"]
    assert conn.transactions[0]["isolation"] == "repeatable_read"


# -- simulated distribution ----------------------------------------------------

@pytest.fixture
def lockable(conn):
    conn.on("fetchrow", LOCK, {"id": ELECTION_ID, "status": "voting_closed", "total_votes": 0})
    conn.on("fetch", "SELECT id, votes_count FROM candidate_lists", [
        {"id": LIST_A, "votes_count": 0}, {"id": LIST_B, "votes_count": 0},
    ])
    conn.on("fetchval", "UPDATE elections", 12)
    return conn


async def test_simulation_needs_administrator(lockable, committee):
    with pytest.raises(Unauthorized):
        await tally.apply_simulated_distribution(lockable, committee, ELECTION_ID, {LIST_A: 1})
    assert lockable.calls == []


async def test_simulation_updates_lists_and_total(lockable, admin):
    result = await tally.apply_simulated_distribution(
        lockable, admin, ELECTION_ID, {LIST_A: 5, LIST_B: 7},
    )

    updates = lockable.executed("UPDATE candidate_lists")
    assert sorted(args for _, args in updates) == sorted([(LIST_A, 5), (LIST_B, 7)])
    (_, args), = lockable.executed("UPDATE elections")
    assert args == (ELECTION_ID, 12)
    assert not lockable.executed("INSERT INTO ballots")
    assert result["total_votes"] == 12
    assert notifications.AGGREGATE_CHANGED in lockable.executed("pg_notify")[0][1][1]


async def test_simulation_is_all_or_nothing(lockable, admin):
    stranger = uuid.uuid4()
    with pytest.raises(InvalidList):
        await tally.apply_simulated_distribution(
            lockable, admin, ELECTION_ID, {LIST_A: 5, stranger: 1},
        )
    assert not lockable.executed("UPDATE candidate_lists")
    assert not lockable.executed("UPDATE elections")
    assert not lockable.executed("INSERT INTO audit_log")


async def test_simulation_rejects_negative_counts(lockable, admin):
    with pytest.raises(InvalidRequest):
        await tally.apply_simulated_distribution(lockable, admin, ELECTION_ID, {LIST_A: -1})
    assert lockable.calls == []


async def test_simulation_rejects_counts_beyond_the_counter_range(lockable, admin):
    with pytest.raises(InvalidRequest):
        await tally.apply_simulated_distribution(
            lockable, admin, ELECTION_ID, {LIST_A: MAX_COUNTER, LIST_B: 1},
        )
    assert lockable.calls == []


async def test_simulation_rejects_totals_that_would_overflow(conn, admin):
    conn.on("fetchrow", LOCK, {
        "id": ELECTION_ID, "status": "voting_open", "total_votes": MAX_COUNTER - 10,
    })
    conn.on("fetch", "SELECT id, votes_count FROM candidate_lists", [
        {"id": LIST_A, "votes_count": MAX_COUNTER - 10}, {"id": LIST_B, "votes_count": 0},
    ])
    with pytest.raises(InvalidRequest, match="overflow"):
        await tally.apply_simulated_distribution(conn, admin, ELECTION_ID, {LIST_B: 11})
    assert not conn.executed("UPDATE candidate_lists")
    assert not conn.executed("UPDATE elections")


def test_simulation_request_bounds_each_count():
    with pytest.raises(ValidationError):
        SimulationRequest(distribution={LIST_A: 10**12})
    assert SimulationRequest(distribution={LIST_A: MAX_COUNTER}).distribution == {
        LIST_A: MAX_COUNTER,
    }


async def test_simulation_after_publication(conn, admin):
    conn.on("fetchrow", LOCK, {"id": ELECTION_ID, "status": "results_published"})
    with pytest.raises(ElectionLocked):
        await tally.apply_simulated_distribution(conn, admin, ELECTION_ID, {LIST_A: 1})


async def test_simulation_unknown_election(conn, admin):
    with pytest.raises(ElectionNotFound):
        await tally.apply_simulated_distribution(conn, admin, ELECTION_ID, {LIST_A: 1})


# -- reset ---------------------------------------------------------------------

async def test_reset_lifts_immutability_for_its_transaction_only(conn, admin):
    conn.on("fetchrow", LOCK, {"id": ELECTION_ID, "status": "voting_closed"})
    conn.on("fetchval", "DELETE FROM ballots", 9)

    result = await tally.reset_election_votes(conn, admin, ELECTION_ID)

    statements = conn.queries()
    set_local = statements.index("SET LOCAL campus_vote.allow_ballot_reset = 'on'")
    delete = next(i for i, q in enumerate(statements) if "DELETE FROM ballots" in q)
    assert set_local < delete
    assert conn.executed("SET votes_count = 0, simulated_votes = 0")
    assert conn.executed("SET total_votes = 0, simulated_votes = 0")
    assert result["total_votes"] == 0
    assert "9 ballots" in result["message"]


async def test_reset_needs_administrator(conn, student):
    with pytest.raises(Unauthorized):
        await tally.reset_election_votes(conn, student, ELECTION_ID)


async def test_reset_after_publication(conn, admin):
    conn.on("fetchrow", LOCK, {"id": ELECTION_ID, "status": "results_published"})
    with pytest.raises(ElectionLocked):
        await tally.reset_election_votes(conn, admin, ELECTION_ID)
    assert not conn.executed("DELETE FROM ballots")
