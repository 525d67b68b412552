from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class JobState(str, Enum):
    CREATED = "CREATED"
    SUBMITTED = "SUBMITTED"
    SYNTHESIZING = "SYNTHESIZING"
    DOWNLOADING = "DOWNLOADING"
    COMPLETED = "COMPLETED"
    DOWNLOADED = "DOWNLOADED"
    ERROR = "ERROR"


TERMINAL_STATES = frozenset({JobState.DOWNLOADED, JobState.ERROR})

# Allowed forward moves; a state may list itself when repeated writes are normal
# (progress updates while synthesizing, cleanup retries while completed).
TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.CREATED: frozenset({JobState.SUBMITTED, JobState.ERROR}),
    JobState.SUBMITTED: frozenset({JobState.SYNTHESIZING, JobState.ERROR}),
    JobState.SYNTHESIZING: frozenset(
        {JobState.SYNTHESIZING, JobState.DOWNLOADING, JobState.ERROR}
    ),
    JobState.DOWNLOADING: frozenset({JobState.COMPLETED, JobState.ERROR}),
    JobState.COMPLETED: frozenset({JobState.COMPLETED, JobState.DOWNLOADED}),
    JobState.DOWNLOADED: frozenset(),
    JobState.ERROR: frozenset(),
}

HANDLE_REQUIRED_STATES = frozenset(
    {
        JobState.SUBMITTED,
        JobState.SYNTHESIZING,
        JobState.DOWNLOADING,
        JobState.COMPLETED,
        JobState.DOWNLOADED,
    }
)
LOCAL_PATH_STATES = frozenset({JobState.COMPLETED, JobState.DOWNLOADED})

# States in which the remote artifact is expected to exist (or to appear).
REMOTE_EXPECTED_STATES = frozenset(
    {
        JobState.SUBMITTED,
        JobState.SYNTHESIZING,
        JobState.DOWNLOADING,
        JobState.COMPLETED,
        JobState.ERROR,
    }
)
IN_FLIGHT_STATES = frozenset({JobState.SUBMITTED, JobState.SYNTHESIZING, JobState.DOWNLOADING})


def can_transition(current: JobState, target: JobState) -> bool:
    return target in TRANSITIONS[current]


def now_utc() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def parse_iso_ts(ts: str | None) -> float | None:
    s = str(ts or "").strip()
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _coerce_state(st: Any) -> JobState:
    if isinstance(st, JobState):
        return st
    st = str(st)
    if st.startswith("JobState."):
        st = st.split(".", 1)[1]
    return JobState(st.upper())


@dataclass(slots=True)
class JobRecord:
    id: str
    title: str
    character_count: int
    uploaded_filename: str
    state: JobState
    started_at: str
    updated_at: str

    progress: float = 0.0
    step: str = "queued"
    provider_progress: float | None = None

    operation_handle: str | None = None
    remote_artifact_uri: str | None = None
    remote_bucket: str | None = None
    remote_object_name: str | None = None

    local_path: str | None = None
    local_filename: str | None = None

    error: str | None = None
    error_kind: str | None = None
    remote_cleaned_up: bool = False

    voice: dict[str, Any] = field(default_factory=dict)
    input_mode: str = ""
    superseded_by: str | None = None
    completed_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def invariant_violations(self) -> list[str]:
        bad: list[str] = []
        if self.state == JobState.CREATED and self.operation_handle:
            bad.append("CREATED record must not carry an operation handle")
        if self.state in HANDLE_REQUIRED_STATES and not self.operation_handle:
            bad.append(f"{self.state.value} record requires an operation handle")
        has_local = bool(self.local_path)
        if self.state in LOCAL_PATH_STATES and not has_local:
            bad.append(f"{self.state.value} record requires local_path")
        if self.state not in LOCAL_PATH_STATES and has_local:
            bad.append(f"{self.state.value} record must not carry local_path")
        if not (0.0 <= float(self.progress) <= 100.0):
            bad.append("progress must be within [0, 100]")
        return bad

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["state"] = self.state.value
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> JobRecord:
        dd = {k: v for k, v in dict(d).items() if k in cls.__dataclass_fields__}
        # Backwards-compatible defaults for older persisted records.
        dd.setdefault("title", "")
        dd.setdefault("character_count", 0)
        dd.setdefault("uploaded_filename", "")
        dd.setdefault("started_at", dd.get("updated_at") or now_utc())
        dd.setdefault("updated_at", dd["started_at"])
        dd.setdefault("voice", {})
        dd.setdefault("remote_cleaned_up", False)
        dd["state"] = _coerce_state(dd.get("state", JobState.CREATED))
        return cls(**dd)

    def view(self) -> dict[str, Any]:
        """
        JobRecord-shaped view for callers (API responses, CLI output).
        """
        d = self.to_dict()
        d["terminal"] = self.is_terminal
        return d


@dataclass(frozen=True, slots=True)
class RecoverableItem:
    job_id: str | None
    book_title: str
    remote_object_name: str
    size_bytes: int
    created_at: str
    already_tracked_locally: bool
    source: str = "listing"
    just_completed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
