"""
Shared Pydantic schemas: request validation and response serialisation.

Organised by bounded context:
    1. Election  - elections, candidate lists, candidates, lifecycle
    2. Voting    - ballot casting, vote status, receipts
    3. Results   - tallies, consistency audit, bulk-tally admin operations
    4. Common    - health checks
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Annotated

from pydantic import AwareDatetime, BaseModel, EmailStr, Field, model_validator

from .lifecycle import ElectionStatus

HEX_COLOR = r"^#[0-9A-Fa-f]{6}$"

# Tally columns are PostgreSQL INTEGER.
MAX_COUNTER = 2**31 - 1

Counter = Annotated[int, Field(ge=0, le=MAX_COUNTER)]


# ══════════════════════════════════════════════════════════════════════════════
# 1. ELECTION
# ══════════════════════════════════════════════════════════════════════════════

class CandidateCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    position: str = Field(min_length=1, max_length=255)
    email: EmailStr | None = None
    student_id: str | None = None
    bio: str | None = None
    image_url: str | None = None
    proposals: str | None = None


class CandidateUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    position: str | None = Field(default=None, min_length=1, max_length=255)
    email: EmailStr | None = None
    student_id: str | None = None
    bio: str | None = None
    image_url: str | None = None
    proposals: str | None = None


class CandidateOut(BaseModel):
    id: uuid.UUID
    list_id: uuid.UUID
    name: str
    position: str
    email: str | None = None
    student_id: str | None = None
    bio: str | None = None
    image_url: str | None = None
    proposals: str | None = None


class CandidateListCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    color: str | None = Field(default=None, pattern=HEX_COLOR)
    description: str | None = None
    candidates: list[CandidateCreate] = Field(default_factory=list)


class CandidateListUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    color: str | None = Field(default=None, pattern=HEX_COLOR)
    description: str | None = None


class CandidateListOut(BaseModel):
    id: uuid.UUID
    election_id: uuid.UUID
    name: str
    color: str | None = None
    description: str | None = None
    votes: int = 0
    candidates: list[CandidateOut] = Field(default_factory=list)


class ElectionCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    campus: str | None = None
    career: str | None = None
    start_date: AwareDatetime | None = None
    end_date: AwareDatetime | None = None
    eligible_voters: Counter | None = None
    candidate_lists: list[CandidateListCreate] = Field(default_factory=list)

    @model_validator(mode="after")
    def _dates_ordered(self):
        if self.start_date and self.end_date and self.start_date >= self.end_date:
            raise ValueError("start_date must be before end_date")
        return self


class ElectionUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    campus: str | None = None
    career: str | None = None
    start_date: AwareDatetime | None = None
    end_date: AwareDatetime | None = None
    eligible_voters: Counter | None = None


class ElectionOut(BaseModel):
    id: uuid.UUID
    title: str
    description: str | None = None
    campus: str | None = None
    career: str | None = None
    status: ElectionStatus
    start_date: datetime | None = None
    end_date: datetime | None = None
    total_votes: int = 0
    eligible_voters: int | None = None
    created_by: uuid.UUID | None = None
    created_at: datetime
    updated_at: datetime
    candidate_lists: list[CandidateListOut] = Field(default_factory=list)


class StatusChangeRequest(BaseModel):
    status: ElectionStatus


# ══════════════════════════════════════════════════════════════════════════════
# 2. VOTING
# ══════════════════════════════════════════════════════════════════════════════

class CastVoteRequest(BaseModel):
    candidate_list_id: uuid.UUID


class VoteResponse(BaseModel):
    message: str
    ballot_id: uuid.UUID
    receipt_token: str
    cast_at: datetime


class VoteStatusResponse(BaseModel):
    election_id: uuid.UUID
    has_voted: bool
    receipt_token: str | None = None
    cast_at: datetime | None = None


class ReceiptOut(BaseModel):
    """Proof of participation. Deliberately carries no candidate-list field."""

    receipt_token: str
    election_id: uuid.UUID
    election_title: str
    cast_at: datetime


class ReceiptVerifyResponse(ReceiptOut):
    verified: bool = True


# ══════════════════════════════════════════════════════════════════════════════
# 3. RESULTS
# ══════════════════════════════════════════════════════════════════════════════

class CandidateResult(BaseModel):
    candidate_id: uuid.UUID
    name: str
    votes: int
    # list votes split evenly across the list's candidates; display only
    approximate: bool = True


class ListResult(BaseModel):
    list_id: uuid.UUID
    name: str
    color: str | None = None
    votes: int
    percentage: float
    candidates: list[CandidateResult] = Field(default_factory=list)


class ElectionResults(BaseModel):
    election_id: uuid.UUID
    title: str
    status: ElectionStatus
    total_votes: int
    eligible_voters: int | None = None
    participation_rate: float
    lists: list[ListResult]


class ListTally(BaseModel):
    list_id: uuid.UUID
    name: str
    votes_count: int
    ballots: int
    simulated_votes: int
    consistent: bool


class TallyReport(BaseModel):
    election_id: uuid.UUID
    total_votes: int
    list_votes_sum: int
    ballots: int
    simulated_votes: int
    consistent: bool
    lists: list[ListTally]


class SimulationRequest(BaseModel):
    distribution: dict[uuid.UUID, Counter] = Field(min_length=1)


class AdminActionResponse(BaseModel):
    message: str
    election_id: uuid.UUID
    total_votes: int


# ══════════════════════════════════════════════════════════════════════════════
# 4. COMMON
# ══════════════════════════════════════════════════════════════════════════════

class HealthResponse(BaseModel):
    status: str
    service: str

