"""Wire models of the rollover service RPC surface."""

from enum import Enum
from typing import List

from pydantic import BaseModel, Field


class SignalKind(str, Enum):
    """Completion signal of a job. Exactly one fires per job id."""

    FINISH = "finish"
    FAILURE = "failure"
    SUCCESS = "success"


class JobSignal(BaseModel):
    jobId: int
    signal: SignalKind
    lines: List[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.signal != SignalKind.FAILURE


class JobIdResponse(BaseModel):
    jobId: int


class Accepted(BaseModel):
    accepted: bool = True


class Pending(BaseModel):
    pending: bool = True


class JobRequest(BaseModel):
    jobId: int


class ActivationRequest(JobRequest):
    derivation: str
    type: str
    arguments: List[str] = Field(default_factory=list)


class ImportRequest(JobRequest):
    closure: str


class DerivationsRequest(JobRequest):
    derivation: List[str]


class ProfileRequest(JobRequest):
    profile: str = "default"


class SetRequest(JobRequest):
    profile: str = "default"
    derivation: str


class CollectGarbageRequest(JobRequest):
    deleteOld: bool = False
