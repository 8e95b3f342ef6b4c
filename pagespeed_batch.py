# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "requests",
#   "pandas",
# ]
# ///
"""PageSpeed Insights resumable batch job.

Collects PageSpeed Insights metrics for a row of URLs in a CSV sheet, for
both mobile and desktop strategies, and appends a 14-row report block to
the sheet once every URL has been processed.

The work is sliced into short, time-boxed activations. All progress lives
in a durable key-value state file, so each activation picks up exactly
where the previous one stopped and schedules the next one until the URL
row is exhausted.
"""

from __future__ import annotations

import argparse
import csv
import json
import os
import smtplib
import sys
import tempfile
import time
import tomllib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
from enum import Enum
from pathlib import Path
from typing import Callable, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pandas as pd
import requests

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PAGESPEED_API_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"
PAGESPEED_CATEGORY = "PERFORMANCE"
REQUEST_TIMEOUT = 120

STRATEGIES = ("mobile", "desktop")
METRIC_KINDS = ("performance", "fcp", "si", "tbt", "lcp", "cls", "inp")
PLACEHOLDER = "-"

# Timing audits: (metric_kind, audit_id, report_label)
AUDIT_METRICS = [
    ("fcp", "first-contentful-paint", "First Contentful Paint"),
    ("si", "speed-index", "Speed Index"),
    ("tbt", "total-blocking-time", "Total Blocking Time"),
    ("lcp", "largest-contentful-paint", "Largest Contentful Paint"),
    ("cls", "cumulative-layout-shift", "Cumulative Layout Shift"),
    ("inp", "interaction-to-next-paint", "Interaction to Next Paint"),
]

# One header row plus one row per timing audit, per strategy.
ROWS_PER_STRATEGY = 1 + len(AUDIT_METRICS)
REPORT_DATE_FORMAT = "%d/%m/%Y"

DEFAULT_BATCH_SIZE = 5
DEFAULT_TIME_BUDGET = 270.0  # seconds, under a 6 minute execution ceiling
DEFAULT_CONTINUE_DELAY_MS = 60 * 1000
DEFAULT_INITIAL_DELAY_MS = 1000
DEFAULT_URL_ROW = 3
DEFAULT_URL_COLUMN = 3
DEFAULT_SHEET = "pagespeed.csv"
DEFAULT_STATE_FILE = ".pagespeed-batch-state.json"
DEFAULT_SMTP_SERVER = "localhost"
DEFAULT_SMTP_PORT = 587
LEASE_GRACE_SECONDS = 60

API_KEY_SECRET = "PAGESPEED_API_KEY"
SMTP_PASSWORD_SECRET = "PAGESPEED_SMTP_PASSWORD"

RUN_CHUNK_OPERATION = "run_chunk"

CURSOR_KEY = "cursor"
JOB_ID_KEY = "job_id"
PHASE_KEY = "phase"
LEASE_KEY = "running"
SCHEDULE_KEY = "scheduled_activations"

CONFIG_FILENAMES = ["pagespeed-batch.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "pagespeed-batch",
]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class BatchJobError(Exception):
    """Base class for errors that stop a batch job operation."""


class StateStoreError(BatchJobError):
    """Raised when persisted state cannot be read or decoded."""


class StateDesyncError(BatchJobError):
    """Raised when metric series are out of step with the cursor."""


class JobCancelledError(BatchJobError):
    """Raised when the job an activation belongs to no longer exists."""


class InvalidTransitionError(BatchJobError):
    """Raised for a lifecycle event that is not valid in the current phase."""


class SheetError(BatchJobError):
    """Raised when the sheet file cannot be read."""


# ---------------------------------------------------------------------------
# Key-Value State Store
# ---------------------------------------------------------------------------


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


class MemoryStore:
    """In-process key-value store. Contents vanish with the process."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError(f"store values must be strings, got {type(value).__name__}")
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._data)


class JsonFileStore:
    """Key-value store persisted as a single JSON object on disk.

    Every mutation rewrites the file through a temp file and an atomic
    rename, so a crash never leaves a half-written state file behind.
    There is no locking: callers are expected to run one activation at a
    time (see JobStateRepository.acquire_lease).
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _load(self) -> dict[str, str]:
        if not self.path.is_file():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError as exc:
            raise StateStoreError(f"malformed state file {self.path}: {exc}") from exc
        except OSError as exc:
            raise StateStoreError(f"cannot read state file {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StateStoreError(f"state file {self.path} does not hold a JSON object")
        return data

    def _save(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as fh:
                json.dump(data, fh, indent=2, sort_keys=True)
            os.replace(tmp_name, self.path)
        except Exception:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get(self, key: str) -> str | None:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError(f"store values must be strings, got {type(value).__name__}")
        data = self._load()
        data[key] = value
        self._save(data)

    def delete(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._save(data)

    def keys(self) -> list[str]:
        return sorted(self._load())


def dump_series(values: list) -> str:
    """Serialize a metric series to text."""
    return json.dumps(list(values))


def load_series(text: str) -> list:
    """Deserialize a metric series produced by dump_series()."""
    try:
        values = json.loads(text)
    except (json.JSONDecodeError, TypeError) as exc:
        raise StateStoreError(f"malformed series value: {exc}") from exc
    if not isinstance(values, list):
        raise StateStoreError(f"series value is not a list: {text[:80]!r}")
    return values


def series_key(strategy: str, metric: str) -> str:
    """Store key holding the series for one strategy/metric pair."""
    if strategy not in STRATEGIES:
        raise ValueError(f"unknown strategy: {strategy}")
    if metric not in METRIC_KINDS:
        raise ValueError(f"unknown metric: {metric}")
    return f"{strategy}_{metric}_scores"


ALL_SERIES_KEYS = [series_key(s, m) for s in STRATEGIES for m in METRIC_KINDS]


# ---------------------------------------------------------------------------
# Job Lifecycle
# ---------------------------------------------------------------------------


class JobPhase(Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    FINALIZING = "finalizing"
    IDLE = "idle"


class JobEvent(Enum):
    START = "start"
    CHUNK_PROCESSED = "chunk_processed"
    URLS_EXHAUSTED = "urls_exhausted"
    REPORT_WRITTEN = "report_written"
    CANCEL = "cancel"


PHASE_TRANSITIONS = {
    (JobPhase.NOT_STARTED, JobEvent.START): JobPhase.RUNNING,
    (JobPhase.IDLE, JobEvent.START): JobPhase.RUNNING,
    (JobPhase.RUNNING, JobEvent.START): JobPhase.RUNNING,
    (JobPhase.FINALIZING, JobEvent.START): JobPhase.RUNNING,
    (JobPhase.RUNNING, JobEvent.CHUNK_PROCESSED): JobPhase.RUNNING,
    (JobPhase.RUNNING, JobEvent.URLS_EXHAUSTED): JobPhase.FINALIZING,
    # A finalization that failed part-way can be retried by another activation.
    (JobPhase.FINALIZING, JobEvent.URLS_EXHAUSTED): JobPhase.FINALIZING,
    (JobPhase.FINALIZING, JobEvent.REPORT_WRITTEN): JobPhase.IDLE,
}


def transition(phase: JobPhase, event: JobEvent) -> JobPhase:
    """Return the phase that follows `event` in `phase`.

    CANCEL is accepted from every phase. Any other pair missing from
    PHASE_TRANSITIONS raises InvalidTransitionError.
    """
    if event is JobEvent.CANCEL:
        return JobPhase.IDLE
    try:
        return PHASE_TRANSITIONS[(phase, event)]
    except KeyError:
        raise InvalidTransitionError(
            f"cannot apply '{event.value}' while job is '{phase.value}'"
        ) from None


def decide_next_step(cursor: int, total: int) -> JobEvent:
    """Continue while URLs remain, otherwise hand off to finalization."""
    if cursor < total:
        return JobEvent.CHUNK_PROCESSED
    return JobEvent.URLS_EXHAUSTED


# ---------------------------------------------------------------------------
# Job State Repository
# ---------------------------------------------------------------------------


class JobStateRepository:
    """Typed access to the job state held in a key-value store.

    The cursor is the authoritative progress marker: its presence means a
    job is in progress. Every metric series must stay exactly as long as
    the cursor. The batch processor is the only writer of cursor and
    series while a job runs.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    def has_job(self) -> bool:
        return self.store.get(CURSOR_KEY) is not None

    def get_cursor(self) -> int | None:
        raw = self.store.get(CURSOR_KEY)
        if raw is None:
            return None
        try:
            cursor = int(raw)
        except ValueError as exc:
            raise StateStoreError(f"invalid cursor value {raw!r}") from exc
        if cursor < 0:
            raise StateStoreError(f"negative cursor value {cursor}")
        return cursor

    def set_cursor(self, cursor: int) -> None:
        if cursor < 0:
            raise ValueError(f"cursor must be >= 0, got {cursor}")
        self.store.set(CURSOR_KEY, str(cursor))

    def commit_cursor(self, cursor: int, job_id: str | None) -> None:
        """Persist the cursor, unless the job was cancelled or replaced."""
        self._ensure_current(job_id)
        self.set_cursor(cursor)

    def get_job_id(self) -> str | None:
        return self.store.get(JOB_ID_KEY)

    def get_phase(self) -> JobPhase:
        raw = self.store.get(PHASE_KEY)
        if raw is None:
            return JobPhase.NOT_STARTED
        try:
            return JobPhase(raw)
        except ValueError as exc:
            raise StateStoreError(f"invalid job phase {raw!r}") from exc

    def set_phase(self, phase: JobPhase) -> None:
        self.store.set(PHASE_KEY, phase.value)

    def reset(self, job_id: str) -> None:
        """Initialize a fresh job: empty series, then cursor 0."""
        for key in ALL_SERIES_KEYS:
            self.store.set(key, dump_series([]))
        self.store.set(JOB_ID_KEY, job_id)
        # Cursor last, so its presence always implies the series exist.
        self.set_cursor(0)

    def _ensure_current(self, job_id: str | None) -> None:
        if not self.has_job():
            raise JobCancelledError("no job in progress")
        if job_id is not None and self.get_job_id() != job_id:
            raise JobCancelledError(f"job {job_id} was replaced by a newer run")

    def append_metric(self, strategy: str, metric: str, value: object, job_id: str | None = None) -> None:
        """Append one value to a series (read, push, write back).

        The job check and the write are separate store round trips, so a
        cancel or restart landing between them can still see this one
        value appended. The lease keeps activations from overlapping; a
        command-line cancel is not serialized against it.
        """
        key = series_key(strategy, metric)
        self._ensure_current(job_id)
        raw = self.store.get(key)
        if raw is None:
            raise JobCancelledError(f"series {key} no longer exists")
        values = load_series(raw)
        values.append(value)
        self.store.set(key, dump_series(values))

    def append_record(self, strategy: str, record: dict, job_id: str | None = None) -> None:
        for metric in METRIC_KINDS:
            self.append_metric(strategy, metric, record.get(metric, PLACEHOLDER), job_id)

    def read_series(self, strategy: str, metric: str) -> list:
        key = series_key(strategy, metric)
        raw = self.store.get(key)
        if raw is None:
            raise JobCancelledError(f"series {key} no longer exists")
        return load_series(raw)

    def read_all_series(self) -> dict[str, dict[str, list]]:
        return {
            strategy: {metric: self.read_series(strategy, metric) for metric in METRIC_KINDS}
            for strategy in STRATEGIES
        }

    def series_lengths(self) -> dict[str, int]:
        lengths = {}
        for strategy in STRATEGIES:
            for metric in METRIC_KINDS:
                lengths[series_key(strategy, metric)] = len(self.read_series(strategy, metric))
        return lengths

    def check_lockstep(self, expected: int) -> None:
        """Raise StateDesyncError unless every series holds `expected` values."""
        mismatched = {key: n for key, n in self.series_lengths().items() if n != expected}
        if mismatched:
            details = ", ".join(f"{key}={n}" for key, n in sorted(mismatched.items()))
            raise StateDesyncError(f"series out of step with cursor {expected}: {details}")

    def clear(self) -> None:
        """Delete every job key. Safe to call when nothing is stored."""
        self.store.delete(CURSOR_KEY)
        self.store.delete(JOB_ID_KEY)
        self.store.delete(LEASE_KEY)
        for key in ALL_SERIES_KEYS:
            self.store.delete(key)

    # -- overlap guard ------------------------------------------------------

    def _read_lease(self) -> dict | None:
        raw = self.store.get(LEASE_KEY)
        if raw is None:
            return None
        try:
            lease = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StateStoreError(f"malformed lease value {raw!r}") from exc
        if not isinstance(lease, dict):
            raise StateStoreError(f"malformed lease value {raw!r}")
        return lease

    def acquire_lease(self, token: str, now: float, ttl: float) -> bool:
        """Take the running flag unless another unexpired activation holds it."""
        lease = self._read_lease()
        if lease is not None and lease.get("token") != token:
            if float(lease.get("expires_at", 0)) > now:
                return False
        self.store.set(LEASE_KEY, json.dumps({"token": token, "expires_at": now + ttl}))
        return True

    def release_lease(self, token: str) -> None:
        lease = self._read_lease()
        if lease is not None and lease.get("token") == token:
            self.store.delete(LEASE_KEY)


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class StoreScheduler:
    """Delayed activations persisted in the key-value store.

    Nothing runs by itself: run_due_activations() (the `tick` and
    `worker` commands) executes whatever has come due.
    """

    def __init__(self, store: KeyValueStore, now: Callable[[], float] = time.time) -> None:
        self.store = store
        self.now = now

    def _load(self) -> list[dict]:
        raw = self.store.get(SCHEDULE_KEY)
        if raw is None:
            return []
        try:
            entries = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StateStoreError(f"malformed schedule: {exc}") from exc
        if not isinstance(entries, list):
            raise StateStoreError("schedule is not a list")
        return entries

    def _save(self, entries: list[dict]) -> None:
        if entries:
            self.store.set(SCHEDULE_KEY, json.dumps(entries))
        else:
            self.store.delete(SCHEDULE_KEY)

    def schedule_after(self, delay_ms: int, operation: str) -> str:
        """Schedule `operation` to run once after `delay_ms`. Returns its handle."""
        if delay_ms < 0:
            raise ValueError(f"delay must be >= 0 ms, got {delay_ms}")
        handle = uuid.uuid4().hex
        entries = self._load()
        entries.append({
            "handle": handle,
            "operation": operation,
            "due_at": self.now() + delay_ms / 1000,
        })
        self._save(entries)
        return handle

    def list_scheduled(self) -> list[dict]:
        return sorted(self._load(), key=lambda entry: entry["due_at"])

    def cancel(self, handle: str) -> bool:
        entries = self._load()
        remaining = [entry for entry in entries if entry["handle"] != handle]
        if len(remaining) == len(entries):
            return False
        self._save(remaining)
        return True

    def pop_due(self, now: float | None = None) -> list[dict]:
        """Remove and return the activations due at `now`, earliest first."""
        current = self.now() if now is None else now
        entries = self.list_scheduled()
        due = [entry for entry in entries if entry["due_at"] <= current]
        if due:
            self._save([entry for entry in entries if entry["due_at"] > current])
        return due

    def next_due_at(self) -> float | None:
        entries = self.list_scheduled()
        return entries[0]["due_at"] if entries else None


# ---------------------------------------------------------------------------
# Sheet (tabular store)
# ---------------------------------------------------------------------------


class CsvSheet:
    """A CSV file addressed like a spreadsheet: 1-based rows and columns.

    CSV has no formatting, so bold ranges are kept in a JSON sidecar next
    to the sheet (`<sheet>.format.json`).
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.format_path = self.path.with_name(self.path.name + ".format.json")
        self._grid = pd.DataFrame()
        self._bold: list[list[int]] = []
        self.reload()

    def reload(self) -> None:
        """Re-read the sheet and its formatting from disk."""
        self._grid = self._read_grid()
        self._bold = self._read_format()

    def _read_grid(self) -> pd.DataFrame:
        if not self.path.is_file():
            return pd.DataFrame()
        try:
            with open(self.path, newline="") as fh:
                rows = list(csv.reader(fh))
        except (OSError, UnicodeDecodeError, csv.Error) as exc:
            raise SheetError(f"cannot read sheet {self.path}: {exc}") from exc
        if not rows:
            return pd.DataFrame()
        # Rows may be ragged; pad them into a rectangular grid.
        width = max(len(row) for row in rows)
        if width == 0:
            return pd.DataFrame()
        padded = [row + [""] * (width - len(row)) for row in rows]
        return pd.DataFrame(padded, dtype=object)

    def _read_format(self) -> list[list[int]]:
        if not self.format_path.is_file():
            return []
        try:
            data = json.loads(self.format_path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            raise SheetError(f"cannot read sheet formatting {self.format_path}: {exc}") from exc
        return [list(bold_range) for bold_range in data.get("bold", [])]

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._grid.to_csv(self.path, header=False, index=False)
        if self._bold:
            self.format_path.write_text(json.dumps({"bold": self._bold}, indent=2))

    @property
    def last_row(self) -> int:
        """1-based index of the last row holding any value, 0 when empty."""
        if self._grid.empty:
            return 0
        filled = self._grid.index[self._grid.ne("").any(axis=1)]
        return int(filled.max()) + 1 if len(filled) else 0

    @property
    def last_column(self) -> int:
        """1-based index of the last column holding any value, 0 when empty."""
        if self._grid.empty:
            return 0
        filled = self._grid.columns[self._grid.ne("").any(axis=0)]
        return int(filled.max()) + 1 if len(filled) else 0

    def read_range(self, row: int, column: int, num_rows: int, num_columns: int) -> list[list]:
        """Read a rectangular range. Cells outside the grid read as ''."""
        if row < 1 or column < 1 or num_rows < 1 or num_columns < 1:
            raise ValueError("range coordinates must be >= 1")
        block = self._grid.reindex(
            index=range(row - 1, row - 1 + num_rows),
            columns=range(column - 1, column - 1 + num_columns),
            fill_value="",
        )
        return block.fillna("").values.tolist()

    def write_range(self, row: int, column: int, values: list[list]) -> None:
        """Write a rectangular block of values and save the sheet."""
        if row < 1 or column < 1:
            raise ValueError("range coordinates must be >= 1")
        if not values:
            return
        width = len(values[0])
        if any(len(values_row) != width for values_row in values):
            raise ValueError("write_range needs a rectangular block")
        num_rows = max(len(self._grid.index), row - 1 + len(values))
        num_columns = max(len(self._grid.columns), column - 1 + width)
        self._grid = self._grid.reindex(
            index=range(num_rows), columns=range(num_columns), fill_value=""
        ).astype(object)
        self._grid.iloc[row - 1:row - 1 + len(values), column - 1:column - 1 + width] = values
        self.save()

    def set_bold(self, row: int, column: int, num_rows: int, num_columns: int) -> None:
        self._bold.append([row, column, num_rows, num_columns])
        self.save()

    def bold_ranges(self) -> list[tuple[int, int, int, int]]:
        return [tuple(bold_range) for bold_range in self._bold]


def read_url_row(sheet: CsvSheet, row: int, column: int) -> list:
    """Read the URL row from `column` through the sheet's last column."""
    width = sheet.last_column - column + 1
    if width < 1:
        return []
    return sheet.read_range(row, column, 1, width)[0]


# ---------------------------------------------------------------------------
# Metric Fetch Client
# ---------------------------------------------------------------------------


def empty_metric_record() -> dict[str, object]:
    """A record with the placeholder for every metric."""
    return {metric: PLACEHOLDER for metric in METRIC_KINDS}


def is_fetchable_url(url: object) -> bool:
    """Blank cells and anything not starting with 'http' are skipped."""
    return isinstance(url, str) and url.strip().startswith("http")


def extract_metric_record(api_response: dict) -> dict[str, object]:
    """Extract the performance score and timing display values from a PageSpeed response.

    Missing fields become the placeholder individually; a response without
    audits yields the all-placeholder record.
    """
    lighthouse = api_response.get("lighthouseResult") or {}
    audits = lighthouse.get("audits")
    if not isinstance(audits, dict):
        return empty_metric_record()

    record = empty_metric_record()
    performance = (lighthouse.get("categories") or {}).get("performance") or {}
    score = performance.get("score")
    if isinstance(score, (int, float)):
        record["performance"] = round(score * 100)

    for metric, audit_id, _label in AUDIT_METRICS:
        display_value = (audits.get(audit_id) or {}).get("displayValue")
        if display_value:
            record[metric] = display_value

    return record


def fetch_metric_record(url: object, strategy: str, api_key: str | None = None) -> dict[str, object]:
    """Fetch one URL + strategy from PageSpeed Insights.

    Never raises: invalid URLs, HTTP errors, API errors and malformed
    responses are reported on stderr and produce the all-placeholder
    record, so every URL always contributes one value to every series.
    """
    if not is_fetchable_url(url):
        return empty_metric_record()

    params = {
        "url": url.strip(),
        "strategy": strategy,
        "category": PAGESPEED_CATEGORY,
    }
    if api_key:
        params["key"] = api_key

    try:
        response = requests.get(PAGESPEED_API_URL, params=params, timeout=REQUEST_TIMEOUT)
        if response.status_code != 200:
            print(f"Error: HTTP {response.status_code} for {url} ({strategy})", file=sys.stderr)
            return empty_metric_record()
        payload = response.json()
        if not isinstance(payload, dict):
            print(f"Error: unexpected response body for {url} ({strategy})", file=sys.stderr)
            return empty_metric_record()
        if payload.get("error"):
            error = payload["error"]
            message = error.get("message", error) if isinstance(error, dict) else error
            print(f"Error: API error for {url} ({strategy}): {message}", file=sys.stderr)
            return empty_metric_record()
        return extract_metric_record(payload)
    except (requests.RequestException, ValueError, AttributeError, TypeError) as exc:
        print(f"Error: request failed for {url} ({strategy}): {exc}", file=sys.stderr)
        return empty_metric_record()


# ---------------------------------------------------------------------------
# Job Context
# ---------------------------------------------------------------------------


@dataclass
class JobSettings:
    batch_size: int = DEFAULT_BATCH_SIZE
    time_budget: float = DEFAULT_TIME_BUDGET
    continue_delay_ms: int = DEFAULT_CONTINUE_DELAY_MS
    initial_delay_ms: int = DEFAULT_INITIAL_DELAY_MS
    url_row: int = DEFAULT_URL_ROW
    url_column: int = DEFAULT_URL_COLUMN
    notify_email: str | None = None
    webhook_url: str | None = None
    timezone: str | None = None
    smtp_server: str = DEFAULT_SMTP_SERVER
    smtp_port: int = DEFAULT_SMTP_PORT
    smtp_user: str | None = None
    smtp_starttls: bool = True
    verbose: bool = False


@dataclass
class JobContext:
    """Everything an activation needs. Activations share nothing else."""

    repository: JobStateRepository
    scheduler: StoreScheduler
    sheet: CsvSheet
    settings: JobSettings = field(default_factory=JobSettings)
    secrets: dict[str, str] = field(default_factory=dict)
    fetcher: Callable[[object, str, str | None], dict] = fetch_metric_record
    clock: Callable[[], float] = time.monotonic
    wall_clock: Callable[[], float] = time.time


def get_secret(ctx: JobContext, name: str) -> str | None:
    """Look up a secret by name: environment first, then the config [secrets] table."""
    return os.environ.get(name) or ctx.secrets.get(name)


# ---------------------------------------------------------------------------
# Notification
# ---------------------------------------------------------------------------


def send_email(
    address: str,
    subject: str,
    body: str,
    settings: JobSettings,
    password: str | None = None,
) -> bool:
    """Send a plain-text email. Failures are warnings only."""
    message = EmailMessage()
    message["From"] = settings.smtp_user or address
    message["To"] = address
    message["Subject"] = subject
    message.set_content(body)

    try:
        with smtplib.SMTP(settings.smtp_server, settings.smtp_port, timeout=30) as server:
            if settings.smtp_starttls:
                server.starttls()
            if settings.smtp_user and password:
                server.login(settings.smtp_user, password)
            server.send_message(message)
    except (smtplib.SMTPException, OSError) as exc:
        print(f"Warning: completion email to {address} failed: {exc}", file=sys.stderr)
        return False
    return True


def send_webhook(webhook_url: str, payload: dict) -> bool:
    """POST a JSON payload to a webhook URL. Failures are warnings only."""
    try:
        response = requests.post(webhook_url, json=payload, timeout=30)
        response.raise_for_status()
    except (requests.RequestException, OSError) as exc:
        print(f"Warning: webhook delivery failed: {exc}", file=sys.stderr)
        return False
    return True


def notify_completion(ctx: JobContext, total: int) -> None:
    settings = ctx.settings
    if settings.notify_email:
        send_email(
            settings.notify_email,
            "PageSpeed batch update complete",
            f"The PageSpeed analysis of {total} URL(s) has finished. "
            f"The report was appended to {ctx.sheet.path}.",
            settings,
            password=get_secret(ctx, SMTP_PASSWORD_SECRET),
        )
    if settings.webhook_url:
        send_webhook(settings.webhook_url, {
            "event": "pagespeed_batch.completed",
            "urls_processed": total,
            "sheet": str(ctx.sheet.path),
            "completed_at": datetime.now(timezone.utc).isoformat(),
        })


# ---------------------------------------------------------------------------
# Finalizer
# ---------------------------------------------------------------------------


def format_report_date(tz_name: str | None = None, moment: datetime | None = None) -> str:
    """Format the report date stamp (dd/mm/YYYY) in the configured time zone."""
    if tz_name:
        try:
            zone = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise BatchJobError(f"unknown time zone '{tz_name}'") from exc
    else:
        zone = None
    if moment is None:
        moment = datetime.now(zone) if zone else datetime.now().astimezone()
    elif zone is not None:
        moment = moment.astimezone(zone)
    return moment.strftime(REPORT_DATE_FORMAT)


def build_report_block(series: dict[str, dict[str, list]], date_label: str) -> list[list]:
    """Assemble the 14 x (2 + N) report block, one column per URL."""
    block: list[list] = []
    for strategy in STRATEGIES:
        strategy_series = series[strategy]
        block.append([date_label, f"{strategy.title()} Performance", *strategy_series["performance"]])
        for metric, _audit_id, label in AUDIT_METRICS:
            block.append(["", label, *strategy_series[metric]])
    return block


def finalize_job(ctx: JobContext, moment: datetime | None = None) -> bool:
    """Write the report block, notify, and clear all job state.

    Returns False without touching the sheet when the job state is gone
    (the job was cancelled while the last chunk was in flight).
    """
    repository = ctx.repository
    cursor = repository.get_cursor()
    if cursor is None:
        if ctx.settings.verbose:
            print("  No job state left to finalize", file=sys.stderr)
        return False

    repository.check_lockstep(cursor)
    series = repository.read_all_series()
    block = build_report_block(series, format_report_date(ctx.settings.timezone, moment))

    sheet = ctx.sheet
    sheet.reload()
    start_row = sheet.last_row + 2
    sheet.write_range(start_row, 1, block)
    for strategy_index in range(len(STRATEGIES)):
        sheet.set_bold(start_row + strategy_index * ROWS_PER_STRATEGY, 1, 1, 2)
    print(f"Report for {cursor} URL(s) written to {sheet.path} at row {start_row}", file=sys.stderr)

    repository.set_phase(transition(repository.get_phase(), JobEvent.REPORT_WRITTEN))
    notify_completion(ctx, cursor)
    cancel_job(ctx)
    return True


# ---------------------------------------------------------------------------
# Batch Processor
# ---------------------------------------------------------------------------


def run_chunk(ctx: JobContext) -> JobPhase:
    """Process the next chunk of URLs, then reschedule or finalize.

    An activation that finds no job (cancelled, or already finished) exits
    without doing anything. An activation that overlaps a running one
    (the `running` lease is held) also exits untouched.
    """
    repository = ctx.repository
    if not repository.has_job():
        if ctx.settings.verbose:
            print("  No job in progress, nothing to do", file=sys.stderr)
        return JobPhase.IDLE

    token = uuid.uuid4().hex
    lease_ttl = ctx.settings.time_budget + 2 * REQUEST_TIMEOUT + LEASE_GRACE_SECONDS
    if not repository.acquire_lease(token, ctx.wall_clock(), lease_ttl):
        print("Warning: another activation is still running, skipping this one", file=sys.stderr)
        return JobPhase.RUNNING

    try:
        return _process_chunk(ctx)
    except JobCancelledError as exc:
        if ctx.settings.verbose:
            print(f"  Job cancelled while the chunk was running: {exc}", file=sys.stderr)
        return JobPhase.IDLE
    finally:
        repository.release_lease(token)


def _process_chunk(ctx: JobContext) -> JobPhase:
    repository = ctx.repository
    settings = ctx.settings

    job_id = repository.get_job_id()
    cursor = repository.get_cursor()
    if cursor is None:
        raise JobCancelledError("job state disappeared")

    api_key = get_secret(ctx, API_KEY_SECRET)
    if not api_key:
        print(f"Warning: {API_KEY_SECRET} is not set, requests are unauthenticated", file=sys.stderr)

    ctx.sheet.reload()
    urls = read_url_row(ctx.sheet, settings.url_row, settings.url_column)
    total = len(urls)
    if cursor > total:
        print(f"Warning: cursor {cursor} is past the {total} URL(s) in the sheet", file=sys.stderr)

    start_time = ctx.clock()
    processed = 0
    while processed < settings.batch_size and cursor < total:
        url = urls[cursor]
        if settings.verbose:
            print(f"  Processing URL {cursor + 1}/{total}: {url}", file=sys.stderr)

        records = [(strategy, ctx.fetcher(url, strategy, api_key)) for strategy in STRATEGIES]
        for strategy, record in records:
            repository.append_record(strategy, record, job_id)

        cursor += 1
        processed += 1

        if ctx.clock() - start_time > settings.time_budget:
            if settings.verbose:
                print(f"  Time budget of {settings.time_budget:.0f}s reached", file=sys.stderr)
            break

    repository.commit_cursor(cursor, job_id)
    print(f"Processed {processed} URL(s), {min(cursor, total)}/{total} done", file=sys.stderr)

    event = decide_next_step(cursor, total)
    phase = transition(repository.get_phase(), event)
    repository.set_phase(phase)

    if event is JobEvent.CHUNK_PROCESSED:
        ctx.scheduler.schedule_after(settings.continue_delay_ms, RUN_CHUNK_OPERATION)
        return phase

    finalize_job(ctx)
    return repository.get_phase()


# ---------------------------------------------------------------------------
# Job Controller
# ---------------------------------------------------------------------------


def start_job(ctx: JobContext) -> str:
    """Discard any previous job, initialize state and schedule the first chunk."""
    cancel_job(ctx)
    repository = ctx.repository
    phase = transition(repository.get_phase(), JobEvent.START)
    job_id = uuid.uuid4().hex
    repository.reset(job_id)
    repository.set_phase(phase)
    ctx.scheduler.schedule_after(ctx.settings.initial_delay_ms, RUN_CHUNK_OPERATION)
    return job_id


def cancel_job(ctx: JobContext) -> int:
    """Unschedule pending chunks and delete all job state. Returns the number unscheduled."""
    unscheduled = 0
    for activation in ctx.scheduler.list_scheduled():
        if activation["operation"] == RUN_CHUNK_OPERATION and ctx.scheduler.cancel(activation["handle"]):
            unscheduled += 1
    repository = ctx.repository
    phase = transition(repository.get_phase(), JobEvent.CANCEL)
    repository.clear()
    repository.set_phase(phase)
    return unscheduled


OPERATIONS: dict[str, Callable[[JobContext], object]] = {
    RUN_CHUNK_OPERATION: run_chunk,
}


def run_due_activations(ctx: JobContext, now: float | None = None) -> int:
    """Run every activation that has come due. Returns how many were popped.

    A failed activation is reported and, while a job is still in progress
    with nothing else scheduled, replaced by a fresh run_chunk activation
    so the job is never left without a continuation.
    """
    due = ctx.scheduler.pop_due(now)
    for activation in due:
        name = activation.get("operation")
        operation = OPERATIONS.get(name)
        if operation is None:
            print(f"Warning: dropping unknown operation '{name}'", file=sys.stderr)
            continue
        try:
            operation(ctx)
        except BatchJobError as exc:
            print(f"Error: activation '{name}' failed: {exc}", file=sys.stderr)
            if ctx.repository.has_job() and not ctx.scheduler.list_scheduled():
                ctx.scheduler.schedule_after(ctx.settings.continue_delay_ms, RUN_CHUNK_OPERATION)
    return len(due)


def run_worker(ctx: JobContext, sleep: Callable[[float], None] = time.sleep) -> int:
    """Run activations as they come due until nothing is scheduled."""
    total = 0
    while True:
        total += run_due_activations(ctx)
        next_due = ctx.scheduler.next_due_at()
        if next_due is None:
            return total
        wait = next_due - ctx.wall_clock()
        if wait > 0:
            if ctx.settings.verbose:
                print(f"  Next activation in {wait:.0f}s", file=sys.stderr)
            sleep(wait)


# ---------------------------------------------------------------------------
# Config & Profile
# ---------------------------------------------------------------------------


def discover_config_path() -> Path | None:
    """Find the first existing config file in search paths."""
    for search_dir in CONFIG_SEARCH_PATHS:
        for filename in CONFIG_FILENAMES:
            candidate = search_dir / filename
            if candidate.is_file():
                return candidate
    return None


def load_config(config_path: Path | None) -> dict:
    """Parse a TOML config file and return its contents as a dict."""
    if config_path is None:
        return {}
    try:
        with open(config_path, "rb") as fh:
            return tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        print(f"Error: malformed config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)
    except OSError as exc:
        print(f"Error: cannot read config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)


# Config keys that map straight onto argparse dest names.
CONFIG_KEYS = (
    "sheet",
    "state_file",
    "batch_size",
    "time_budget",
    "continue_delay_ms",
    "initial_delay_ms",
    "url_row",
    "url_column",
    "notify_email",
    "webhook_url",
    "timezone",
    "smtp_server",
    "smtp_port",
    "smtp_user",
    "smtp_starttls",
    "verbose",
)


def apply_profile(args: argparse.Namespace, config: dict, profile_name: str | None) -> argparse.Namespace:
    """Merge config [settings] and optional profile into args.

    Resolution order (highest priority wins):
      1. Explicit CLI flags
      2. Profile values
      3. [settings] defaults from config
      4. Built-in defaults (already in args)
    """
    settings = config.get("settings", {})
    profile = {}
    if profile_name:
        profiles = config.get("profiles", {})
        if profile_name not in profiles:
            available = ", ".join(profiles.keys()) if profiles else "(none)"
            print(
                f"Error: profile '{profile_name}' not found in config. Available: {available}",
                file=sys.stderr,
            )
            sys.exit(1)
        profile = profiles[profile_name]

    cli_explicit = set(getattr(args, "_explicit_args", []))

    for key in CONFIG_KEYS:
        if key in cli_explicit:
            continue
        if key in profile:
            setattr(args, key, profile[key])
        elif key in settings:
            setattr(args, key, settings[key])

    args.secrets = dict(config.get("secrets", {}))
    return args


def settings_from_args(args: argparse.Namespace) -> JobSettings:
    """Build validated JobSettings from merged args. Exits on invalid values."""
    settings = JobSettings(
        batch_size=int(args.batch_size),
        time_budget=float(args.time_budget),
        continue_delay_ms=int(args.continue_delay_ms),
        initial_delay_ms=int(args.initial_delay_ms),
        url_row=int(args.url_row),
        url_column=int(args.url_column),
        notify_email=args.notify_email or None,
        webhook_url=args.webhook_url or None,
        timezone=args.timezone or None,
        smtp_server=args.smtp_server,
        smtp_port=int(args.smtp_port),
        smtp_user=args.smtp_user or None,
        smtp_starttls=bool(args.smtp_starttls),
        verbose=bool(args.verbose),
    )

    problems = []
    if settings.batch_size < 1:
        problems.append("batch_size must be at least 1")
    if settings.time_budget <= 0:
        problems.append("time_budget must be positive")
    if settings.continue_delay_ms < 0 or settings.initial_delay_ms < 0:
        problems.append("delays must not be negative")
    if settings.url_row < 1 or settings.url_column < 1:
        problems.append("url_row and url_column are 1-based")
    if settings.timezone:
        try:
            ZoneInfo(settings.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            problems.append(f"unknown time zone '{settings.timezone}'")
    for problem in problems:
        print(f"Error: {problem}", file=sys.stderr)
    if problems:
        sys.exit(1)
    return settings


def build_context(args: argparse.Namespace) -> JobContext:
    """Wire the state file, scheduler and sheet for one command invocation."""
    store = JsonFileStore(args.state_file)
    return JobContext(
        repository=JobStateRepository(store),
        scheduler=StoreScheduler(store),
        sheet=CsvSheet(args.sheet),
        settings=settings_from_args(args),
        secrets=getattr(args, "secrets", {}),
    )


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


class TrackingAction(argparse.Action):
    """Argparse action that records which flags were explicitly provided."""

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


class TrackingStoreTrueAction(argparse.Action):
    """Like store_true but tracks that the flag was explicitly set."""

    def __init__(self, option_strings, dest, default=False, required=False, help=None):
        super().__init__(option_strings=option_strings, dest=dest, nargs=0, const=True, default=default, required=required, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, True)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="pagespeed-batch",
        description="Resumable PageSpeed Insights batch job for a CSV sheet",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", dest="config", action=TrackingAction, default=None, help="Path to config TOML file")
    parser.add_argument("-p", "--profile", dest="profile", action=TrackingAction, default=None, help="Named profile from config file")
    parser.add_argument("-v", "--verbose", dest="verbose", action=TrackingStoreTrueAction, default=False, help="Verbose output to stderr")
    parser.add_argument("--sheet", dest="sheet", action=TrackingAction, default=DEFAULT_SHEET, help="CSV sheet holding the URL row and the reports")
    parser.add_argument("--state-file", dest="state_file", action=TrackingAction, default=DEFAULT_STATE_FILE, help="JSON file holding job state between activations")
    parser.add_argument("--batch-size", dest="batch_size", action=TrackingAction, type=int, default=DEFAULT_BATCH_SIZE, help="URLs per activation (default: 5)")
    parser.add_argument("--time-budget", dest="time_budget", action=TrackingAction, type=float, default=DEFAULT_TIME_BUDGET, help="Seconds after which an activation stops early (default: 270)")
    # Config-file only settings
    parser.set_defaults(
        continue_delay_ms=DEFAULT_CONTINUE_DELAY_MS,
        initial_delay_ms=DEFAULT_INITIAL_DELAY_MS,
        url_row=DEFAULT_URL_ROW,
        url_column=DEFAULT_URL_COLUMN,
        notify_email=None,
        webhook_url=None,
        timezone=None,
        smtp_server=DEFAULT_SMTP_SERVER,
        smtp_port=DEFAULT_SMTP_PORT,
        smtp_user=None,
        smtp_starttls=True,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")
    subparsers.add_parser("start", help="Start a full update (discards any running job)")
    subparsers.add_parser("cancel", help="Cancel the running update and discard its progress")
    subparsers.add_parser("run-chunk", help="Process one chunk now, outside the schedule")
    subparsers.add_parser("tick", help="Run activations that are due (for cron)")
    subparsers.add_parser("worker", help="Run activations as they come due until the job is done")
    subparsers.add_parser("status", help="Show job progress and scheduled activations")

    return parser


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def cmd_start(args: argparse.Namespace) -> None:
    ctx = build_context(args)
    job_id = start_job(ctx)
    print(
        "Update started: the PageSpeed analysis has begun and will run in chunks "
        f"of {ctx.settings.batch_size} URL(s). Keep `pagespeed-batch worker` running "
        "(or call `pagespeed-batch tick` from cron) to process it."
    )
    if ctx.settings.verbose:
        print(f"  Job id: {job_id}", file=sys.stderr)


def cmd_cancel(args: argparse.Namespace) -> None:
    ctx = build_context(args)
    unscheduled = cancel_job(ctx)
    print(f"Update cancelled ({unscheduled} scheduled activation(s) removed).")


def cmd_run_chunk(args: argparse.Namespace) -> None:
    ctx = build_context(args)
    phase = run_chunk(ctx)
    print(f"Job phase: {phase.value}", file=sys.stderr)


def cmd_tick(args: argparse.Namespace) -> None:
    ctx = build_context(args)
    ran = run_due_activations(ctx)
    if ctx.settings.verbose:
        print(f"  Ran {ran} due activation(s)", file=sys.stderr)


def cmd_worker(args: argparse.Namespace) -> None:
    ctx = build_context(args)
    ran = run_worker(ctx)
    print(f"Worker finished after {ran} activation(s)", file=sys.stderr)


def cmd_status(args: argparse.Namespace) -> None:
    ctx = build_context(args)
    repository = ctx.repository
    cursor = repository.get_cursor()
    total = len(read_url_row(ctx.sheet, ctx.settings.url_row, ctx.settings.url_column))

    lines = [f"Phase:     {repository.get_phase().value}"]
    if cursor is None:
        lines.append("Progress:  no job in progress")
    else:
        lines.append(f"Progress:  {cursor}/{total} URL(s)")
        lengths = set(repository.series_lengths().values())
        in_step = lengths == {cursor}
        lines.append(f"Series:    {'in step' if in_step else 'OUT OF STEP ' + str(sorted(lengths))}")

    scheduled = ctx.scheduler.list_scheduled()
    lines.append(f"Scheduled: {len(scheduled)}")
    for activation in scheduled:
        due = datetime.fromtimestamp(activation["due_at"]).astimezone().isoformat(timespec="seconds")
        lines.append(f"  {activation['operation']} at {due}")
    print("\n".join(lines))


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main() -> None:
    parser = build_argument_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    config_path = Path(args.config) if args.config else discover_config_path()
    config = load_config(config_path)

    profile_name = getattr(args, "profile", None)
    args = apply_profile(args, config, profile_name)

    commands = {
        "start": cmd_start,
        "cancel": cmd_cancel,
        "run-chunk": cmd_run_chunk,
        "tick": cmd_tick,
        "worker": cmd_worker,
        "status": cmd_status,
    }

    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(1)
    try:
        handler(args)
    except BatchJobError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
