"""
Idempotency Outcomes

Result types returned by the coordinator. Conflict and mismatch are ordinary
outcomes so callers can tell "retry me later" apart from "you reused a key".
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional


class RequestOutcomeKind(str, Enum):
    """Terminal decision for a request-shaped operation."""
    EXECUTED = "executed"
    REPLAYED = "replayed"
    CONFLICT = "conflict"
    MISMATCH = "mismatch"
    REJECTED = "rejected"


class RejectionReason(str, Enum):
    """Why a request was rejected before execution."""
    KEY_MISSING = "key_missing"
    KEY_MALFORMED = "key_malformed"
    STORE_UNAVAILABLE = "store_unavailable"


# Marks an OperationResult body holding base64 text of raw bytes
BASE64_ENCODING = "base64"


class JobOutcomeKind(str, Enum):
    """Terminal decision for a queued job."""
    EXECUTED = "executed"
    SKIPPED = "skipped"
    DECLINED = "declined"  # no key supplied, ran without tracking


@dataclass(frozen=True)
class OperationResult:
    """
    What an operation produced: HTTP-style status, body, headers.

    body is JSON-ready unless body_encoding is "base64", in which case it holds
    the base64 text of an opaque response body.
    """
    status_code: int
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    body_encoding: Optional[str] = None

    @property
    def is_raw(self) -> bool:
        return self.body_encoding == BASE64_ENCODING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status_code": self.status_code,
            "body": self.body,
            "headers": dict(self.headers),
            "body_encoding": self.body_encoding,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OperationResult":
        return cls(
            status_code=int(data["status_code"]),
            body=data.get("body"),
            headers=dict(data.get("headers") or {}),
            body_encoding=data.get("body_encoding"),
        )


# Decides whether a result is replayable (persist + cache) or a transient failure
ResultClassifier = Callable[[OperationResult], bool]


def is_successful(result: OperationResult) -> bool:
    """Default classifier: only 2xx results are recorded for replay."""
    return 200 <= result.status_code < 300


# HTTP status codes for the non-executing outcomes
_REJECTION_STATUS = {
    RejectionReason.KEY_MISSING: 400,
    RejectionReason.KEY_MALFORMED: 400,
    RejectionReason.STORE_UNAVAILABLE: 503,
}


@dataclass(frozen=True)
class RequestOutcome:
    """
    Decision for one inbound request.

    result is set for EXECUTED and REPLAYED, reason for REJECTED.
    stored tells whether an EXECUTED result was durably recorded.
    """
    kind: RequestOutcomeKind
    result: Optional[OperationResult] = None
    reason: Optional[RejectionReason] = None
    message: Optional[str] = None
    stored: bool = False

    @classmethod
    def executed(cls, result: OperationResult, stored: bool) -> "RequestOutcome":
        return cls(kind=RequestOutcomeKind.EXECUTED, result=result, stored=stored)

    @classmethod
    def replayed(cls, result: OperationResult) -> "RequestOutcome":
        return cls(kind=RequestOutcomeKind.REPLAYED, result=result, stored=True)

    @classmethod
    def conflict(cls) -> "RequestOutcome":
        return cls(
            kind=RequestOutcomeKind.CONFLICT,
            message="A request with this idempotency key is already in progress",
        )

    @classmethod
    def mismatch(cls) -> "RequestOutcome":
        return cls(
            kind=RequestOutcomeKind.MISMATCH,
            message="Payload mismatch for idempotency key",
        )

    @classmethod
    def rejected(cls, reason: RejectionReason, message: str) -> "RequestOutcome":
        return cls(kind=RequestOutcomeKind.REJECTED, reason=reason, message=message)

    @property
    def status_code(self) -> int:
        """HTTP status a transport should answer with."""
        if self.result is not None:
            return self.result.status_code
        if self.kind == RequestOutcomeKind.CONFLICT:
            return 409
        if self.kind == RequestOutcomeKind.MISMATCH:
            return 422
        return _REJECTION_STATUS.get(self.reason, 400)


@dataclass(frozen=True)
class JobOutcome:
    """Decision for one job dispatch. value is the job body's return value."""
    kind: JobOutcomeKind
    value: Any = None
    reason: Optional[str] = None

    @classmethod
    def executed(cls, value: Any = None) -> "JobOutcome":
        return cls(kind=JobOutcomeKind.EXECUTED, value=value)

    @classmethod
    def skipped(cls, reason: str) -> "JobOutcome":
        return cls(kind=JobOutcomeKind.SKIPPED, reason=reason)

    @classmethod
    def declined(cls, value: Any = None, reason: str = "no_key") -> "JobOutcome":
        return cls(kind=JobOutcomeKind.DECLINED, value=value, reason=reason)
