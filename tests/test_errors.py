import asyncpg
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from campusvote.errors import (
    AlreadyVoted, ElectionNotFound, ElectionNotOpen, ErrorKind, InvalidList,
    InvalidRequest, error_payload, register_error_handlers, translate_db_error,
)

from conftest import pg_error


@pytest.mark.parametrize("error_cls,constraint,expected", [
    (asyncpg.UniqueViolationError, "ballots_one_per_voter", AlreadyVoted),
    (asyncpg.ForeignKeyViolationError, "ballots_list_matches_election", InvalidList),
    (asyncpg.CheckViolationError, "ballots_election_open", ElectionNotOpen),
    (asyncpg.CheckViolationError, "elections_dates_ordered", InvalidRequest),
])
def test_constraint_violations_are_typed(error_cls, constraint, expected):
    assert isinstance(translate_db_error(pg_error(error_cls, constraint)), expected)


def test_unknown_constraints_are_not_translated():
    assert translate_db_error(pg_error(asyncpg.UniqueViolationError, "something_else")) is None
    assert translate_db_error(ValueError("boom")) is None


def test_user_facing_messages():
    assert AlreadyVoted().detail == "You have already voted in this election"
    assert InvalidList().detail == "Invalid selection, please reload"
    assert ElectionNotOpen().detail == "Voting is not currently open"
    assert AlreadyVoted.status_code == 409
    assert InvalidList.status_code == 422


def test_error_payload_is_enumerable():
    payload = error_payload(ElectionNotFound())
    assert payload == {"error": ErrorKind.NOT_FOUND.value, "detail": "Election not found"}


def test_registered_handler_renders_errors():
    app = FastAPI()
    register_error_handlers(app)

    @app.get("/boom")
    async def boom():
        raise AlreadyVoted()

    resp = TestClient(app).get("/boom")
    assert resp.status_code == 409
    assert resp.json() == {
        "error": "already_voted",
        "detail": "You have already voted in this election",
    }
