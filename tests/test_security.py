import uuid

import pytest

from campusvote.errors import NotAuthenticated
from campusvote.security import (
    Role, Session, decode_session, generate_receipt_token, get_session, parse_roles,
)

from conftest import VOTER_ID, make_token


def test_decode_session_reads_subject_and_roles():
    token = make_token(roles=["administrator"], email="ana@campus.example")
    session = decode_session(token)
    assert session.user_id == VOTER_ID
    assert session.roles == frozenset({Role.STUDENT, Role.ADMINISTRATOR})
    assert session.email == "ana@campus.example"
    assert session.has_role(Role.ADMINISTRATOR)


def test_every_caller_is_a_student():
    session = decode_session(make_token())
    assert session.roles == frozenset({Role.STUDENT})
    assert not session.has_role(Role.ADMINISTRATOR)


def test_roles_in_user_metadata_are_ignored():
    token = make_token(user_metadata={"roles": ["administrator"]})
    assert not decode_session(token).has_role(Role.ADMINISTRATOR)


def test_malformed_app_metadata_grants_no_roles():
    for app_metadata in ("administrator", ["administrator"], 7):
        session = decode_session(make_token(app_metadata=app_metadata))
        assert session.roles == frozenset({Role.STUDENT})


def test_parse_roles_drops_unknown_values():
    assert parse_roles(["Electoral_Committee", "superuser", 7]) == frozenset({
        Role.STUDENT, Role.ELECTORAL_COMMITTEE,
    })
    assert parse_roles("administrator") == frozenset({Role.STUDENT})
    assert parse_roles(None) == frozenset({Role.STUDENT})


def test_expired_token_is_rejected():
    with pytest.raises(NotAuthenticated, match="expired"):
        decode_session(make_token(expires_in=-60))


def test_token_with_wrong_audience_is_rejected():
    with pytest.raises(NotAuthenticated):
        decode_session(make_token(aud="someone-else"))


def test_token_with_bad_subject_is_rejected():
    with pytest.raises(NotAuthenticated, match="subject"):
        decode_session(make_token(user_id="not-a-uuid"))


def test_garbage_token_is_rejected():
    with pytest.raises(NotAuthenticated):
        decode_session("not.a.jwt")


async def test_get_session_requires_bearer_header():
    with pytest.raises(NotAuthenticated):
        await get_session(None)
    with pytest.raises(NotAuthenticated):
        await get_session(f"Basic {make_token()}")
    session = await get_session(f"Bearer {make_token()}")
    assert session.user_id == VOTER_ID


def test_session_is_immutable():
    session = Session(user_id=uuid.uuid4())
    with pytest.raises(AttributeError):
        session.user_id = VOTER_ID


def test_receipt_tokens_are_opaque_and_unique():
    tokens = {generate_receipt_token() for _ in range(500)}
    assert len(tokens) == 500
    for token in tokens:
        assert len(token) >= 32
        assert str(VOTER_ID) not in token
