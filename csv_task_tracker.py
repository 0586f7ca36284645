#!/usr/bin/env python3
# csv_task_tracker: Terminal task grid backed by a plain CSV file
#
# Hotkeys
#   j/k  move selection (arrows work too)
#   h/l  move the column cursor
#   a    add a task (next numeric id, assigned to the current OS user)
#   e    edit the selected cell (Enter commits, Esc cancels)
#   x    delete the selected task (asks y/n)
#   c    toggle hiding of completed tasks
#   s    save (Ctrl-S works too)
#   r    reload from disk (only when there are no unsaved changes)
#   q    quit (asks save/discard/cancel when there are unsaved changes)
#
# Config highlights
# - storage: fixed          # read/write tasks.csv in the working directory
#   storage: archive        # write CSV/tasks_<YYYY-MM-DD_HH-mm-ss>.csv per save, load the newest
# - id_policy: alphanumeric # or numeric (digits only)
# - require_priority: false # tolerate files without a Priority column
#
# Notes
# - Every field is written double-quoted; a literal " inside a value is written
#   as two single quotes ('') and is NOT turned back into " on load.
# - A quote preceded by a backslash does not open/close a quoted field, except
#   that it closes one right before a comma or line break. Text values may not
#   end with a backslash.
# - Row colours: Completed > overdue > due today > Urgent > In Progress > rest.

from __future__ import annotations

import argparse
import contextlib
import datetime as dt
import getpass
import json
import logging
import os
import re
import shutil
import sys
import tempfile
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import yaml
from prompt_toolkit import Application
from prompt_toolkit.filters import Condition
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys
from prompt_toolkit.layout import HSplit, Layout, Window
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.styles import Style
from prompt_toolkit.utils import get_cwidth


logger = logging.getLogger('csv_task_tracker')


# -----------------------------
# Task model
# -----------------------------
STATUSES = ("Not Started", "In Progress", "Completed")
PRIORITIES = ("Low", "Medium", "High", "Urgent")
DEFAULT_STATUS = "Not Started"
DEFAULT_PRIORITY = "Medium"
DEFAULT_TASK_NAME = "New Task"
DATE_FORMAT = "%Y-%m-%d"

EDITABLE_FIELDS = ("task_id", "name", "status", "assigned_user", "due_date", "priority", "notes")
FIELD_LABELS = {
    "task_id": "TaskID",
    "name": "Task",
    "status": "Status",
    "assigned_user": "AssignedUser",
    "due_date": "DueDate",
    "priority": "Priority",
    "notes": "Notes",
}

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_NUMERIC_ID_RE = re.compile(r"^[0-9]+$")
_ALNUM_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def _match_choice(value: Optional[str], choices: Tuple[str, ...]) -> Optional[str]:
    """Case-insensitive lookup returning the canonical spelling."""
    needle = (value or "").strip().lower()
    for choice in choices:
        if choice.lower() == needle:
            return choice
    return None


def parse_due_date(value: object) -> Optional[dt.date]:
    """Parse a ``YYYY-MM-DD`` value; empty/None means no due date.

    Raises ValueError for anything else.
    """
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    text = str(value).strip()
    if not text:
        return None
    if not _DATE_RE.match(text):
        raise ValueError(f"date must look like YYYY-MM-DD: {text!r}")
    return dt.datetime.strptime(text, DATE_FORMAT).date()


def format_due_date(value: Optional[dt.date]) -> str:
    return value.strftime(DATE_FORMAT) if value else ""


def is_numeric_id(task_id: str) -> bool:
    return bool(_NUMERIC_ID_RE.match(task_id or ""))


def normalize_task_id(value: object, numeric: bool = False) -> str:
    text = "" if value is None else str(value).strip()
    if not text:
        raise ValueError("TaskID cannot be empty")
    if numeric:
        if not is_numeric_id(text):
            raise ValueError(f"TaskID must be numeric: {text!r}")
    elif not _ALNUM_ID_RE.match(text):
        raise ValueError(f"TaskID may only contain letters, digits, '.', '_' or '-': {text!r}")
    return text


def current_user_name() -> str:
    try:
        return getpass.getuser()
    except (OSError, KeyError, ImportError):
        return os.environ.get("USERNAME") or os.environ.get("USER") or ""


@dataclass
class TaskRecord:
    task_id: str
    name: str = DEFAULT_TASK_NAME
    status: str = DEFAULT_STATUS
    assigned_user: str = ""
    due_date: Optional[dt.date] = None
    priority: str = DEFAULT_PRIORITY
    notes: str = ""

    @property
    def is_completed(self) -> bool:
        return self.status == "Completed"

    @property
    def numeric_id(self) -> Optional[int]:
        return int(self.task_id) if is_numeric_id(self.task_id) else None

    @staticmethod
    def validate_field(name: str, value: object) -> object:
        """Return the normalised value for ``name`` or raise ValueError.

        Only rules local to one record live here; id uniqueness is checked
        by the store.
        """
        if name == "status":
            choice = _match_choice(None if value is None else str(value), STATUSES)
            if choice is None:
                raise ValueError(f"Invalid Status {value!r}; expected one of: {', '.join(STATUSES)}")
            return choice
        if name == "priority":
            choice = _match_choice(None if value is None else str(value), PRIORITIES)
            if choice is None:
                raise ValueError(f"Invalid Priority {value!r}; expected one of: {', '.join(PRIORITIES)}")
            return choice
        if name == "due_date":
            try:
                return parse_due_date(value)
            except ValueError:
                raise ValueError(f"Invalid DueDate {value!r}; expected YYYY-MM-DD") from None
        if name in ("name", "assigned_user", "notes"):
            text = "" if value is None else str(value)
            if text.endswith("\\"):
                raise ValueError(f"Invalid {FIELD_LABELS[name]}: a value cannot end with a backslash")
            return text
        raise ValueError(f"Field {name!r} cannot be edited here")

    def cell_text(self, name: str) -> str:
        if name == "due_date":
            return format_due_date(self.due_date)
        return str(getattr(self, name) or "")


# -----------------------------
# CSV codec
# -----------------------------
CSV_HEADERS = ("TaskID", "Task", "Status", "AssignedUser", "DueDate", "Priority", "Notes")
REQUIRED_HEADERS = ("TaskID", "Task", "Status", "AssignedUser", "DueDate", "Notes")
HEADER_FIELDS = {header: name for name, header in FIELD_LABELS.items()}
TEXT_HEADERS = ("Task", "AssignedUser", "Notes")


class CsvFormatError(ValueError):
    """The CSV source cannot be loaded at all (empty, not UTF-8, missing headers)."""

    def __init__(self, message: str, missing: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.missing = list(missing or [])


@dataclass
class DecodeResult:
    rows: List[Dict[str, object]]
    warnings: List[str]
    data_rows: int = 0


def _quote_toggles(text: str, i: int, in_quotes: bool) -> bool:
    # A backslash-quote only closes a quoted field at a field or record boundary.
    if i == 0 or text[i - 1] != "\\":
        return True
    return in_quotes and (i + 1 == len(text) or text[i + 1] in ",\r\n")


def _split_quoted(text: str, separator: str) -> List[str]:
    # Quotes are kept verbatim; only the separator outside quotes is consumed.
    parts: List[str] = []
    buf: List[str] = []
    in_quotes = False
    for i, ch in enumerate(text):
        if ch == '"' and _quote_toggles(text, i, in_quotes):
            in_quotes = not in_quotes
            buf.append(ch)
        elif ch == separator and not in_quotes:
            parts.append("".join(buf))
            buf = []
        else:
            buf.append(ch)
    parts.append("".join(buf))
    return parts


def split_records(text: str) -> List[str]:
    """Split CSV text into logical records; quoted fields may span lines."""
    records = [r[:-1] if r.endswith("\r") else r for r in _split_quoted(text, "\n")]
    if records and records[-1] == "":
        records.pop()
    return records


def split_fields(record: str) -> List[str]:
    return _split_quoted(record, ",")


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1]
    return value


def decode_tasks(text: str, *, require_priority: bool = False, numeric_ids: bool = False) -> DecodeResult:
    """Parse CSV text into task field maps.

    Bad rows are skipped (or coerced for Status/Priority) and reported in
    ``warnings``; only an empty source or missing headers raise
    CsvFormatError. Row numbers in warnings count the records after the
    header from 1, blank ones included.
    """
    if text.startswith("\ufeff"):
        text = text[1:]
    records = split_records(text)
    header_at = next((i for i, r in enumerate(records) if r.strip()), None)
    if header_at is None:
        raise CsvFormatError("CSV file is empty")
    header, body = records[header_at], records[header_at + 1:]

    columns: Dict[str, int] = {}
    for idx, raw_name in enumerate(split_fields(header)):
        name = _strip_quotes(raw_name.strip()).strip()
        if name in HEADER_FIELDS and name not in columns:
            columns[name] = idx
    required = REQUIRED_HEADERS + (("Priority",) if require_priority else ())
    missing = [h for h in required if h not in columns]
    if missing:
        raise CsvFormatError(f"Missing required headers in CSV: {', '.join(missing)}", missing)

    width = max(columns.values()) + 1
    rows: List[Dict[str, object]] = []
    warnings: List[str] = []
    for row_no, record in enumerate(body, start=1):
        if not record.strip():
            continue
        raw = split_fields(record)
        if len(raw) < width:
            warnings.append(f"Row {row_no} has too few fields: {record}")
            continue
        values = {name: _strip_quotes(raw[idx]) for name, idx in columns.items()}
        try:
            task_id = normalize_task_id(values["TaskID"], numeric=numeric_ids)
        except ValueError as exc:
            warnings.append(f"Invalid TaskID in row {row_no}: {exc}")
            continue
        try:
            due_date = parse_due_date(values["DueDate"])
        except ValueError:
            warnings.append(f"Invalid DueDate format in row {row_no}: {values['DueDate']}")
            continue
        for name in TEXT_HEADERS:
            if values[name].endswith("\\"):
                warnings.append(f"Trailing backslash removed from {name} in row {row_no}")
                values[name] = values[name].rstrip("\\")
        status = _match_choice(values["Status"], STATUSES)
        if status is None:
            warnings.append(f"Invalid Status in row {row_no}: {values['Status']}, defaulting to {DEFAULT_STATUS}")
            status = DEFAULT_STATUS
        if "Priority" in values:
            priority = _match_choice(values["Priority"], PRIORITIES)
            if priority is None:
                warnings.append(f"Invalid Priority in row {row_no}: {values['Priority']}, defaulting to {DEFAULT_PRIORITY}")
                priority = DEFAULT_PRIORITY
        else:
            priority = DEFAULT_PRIORITY
        rows.append({
            "task_id": task_id,
            "name": values["Task"],
            "status": status,
            "assigned_user": values["AssignedUser"],
            "due_date": due_date,
            "priority": priority,
            "notes": values["Notes"],
        })
    return DecodeResult(rows=rows, warnings=warnings, data_rows=sum(1 for r in body if r.strip()))


def _quote_field(value: object) -> str:
    text = "" if value is None else str(value)
    return '"' + text.replace('"', "''") + '"'


def encode_tasks(tasks: Iterable[TaskRecord]) -> str:
    lines = [",".join(_quote_field(h) for h in CSV_HEADERS)]
    for t in tasks:
        lines.append(",".join(_quote_field(v) for v in (
            t.task_id, t.name, t.status, t.assigned_user,
            format_due_date(t.due_date), t.priority, t.notes,
        )))
    return "\n".join(lines) + "\n"


# -----------------------------
# Store
# -----------------------------
@dataclass
class EditResult:
    accepted: bool
    message: str
    task_id: Optional[str] = None


@dataclass
class LoadSummary:
    loaded: int
    warnings: List[str]
    message: str


def task_sort_key(task: TaskRecord) -> Tuple[int, int, str]:
    """Numeric ids by value first, then the rest lexicographically."""
    number = task.numeric_id
    if number is not None:
        return (0, number, task.task_id)
    return (1, 0, task.task_id)


class FilteredView:
    """Re-evaluated on every iteration, so it always reflects the store."""

    def __init__(self, store: "TaskStore", hide_completed: bool = False):
        self._store = store
        self.hide_completed = hide_completed

    def __iter__(self) -> Iterator[TaskRecord]:
        for task in self._store.tasks:
            if self.hide_completed and task.is_completed:
                continue
            yield task

    def __len__(self) -> int:
        return sum(1 for _ in self)


class TaskStore:
    def __init__(self, numeric_ids: bool = False, user_provider: Callable[[], str] = current_user_name):
        self.numeric_ids = numeric_ids
        self.dirty = False
        self._tasks: List[TaskRecord] = []
        self._next_numeric_id = 1
        self._listeners: List[Callable[[str], None]] = []
        self._user_provider = user_provider

    # --- read side ---
    @property
    def tasks(self) -> List[TaskRecord]:
        return list(self._tasks)

    @property
    def next_numeric_id(self) -> int:
        return self._next_numeric_id

    def __len__(self) -> int:
        return len(self._tasks)

    def get(self, task_id: Optional[str]) -> Optional[TaskRecord]:
        for task in self._tasks:
            if task.task_id == task_id:
                return task
        return None

    def filtered_view(self, hide_completed: bool = False) -> FilteredView:
        return FilteredView(self, hide_completed)

    # --- change notification ---
    def subscribe(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Register ``callback(event)``; returns a function that unsubscribes."""
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)
        return _unsubscribe

    def _notify(self, event: str) -> None:
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception:
                logger.exception("Store listener failed for %s", event)

    def _recompute_next_id(self) -> None:
        highest = 0
        for task in self._tasks:
            number = task.numeric_id
            if number is not None and number > highest:
                highest = number
        self._next_numeric_id = highest + 1

    def _mark_dirty(self, event: str) -> None:
        self.dirty = True
        self._notify(event)

    # --- mutators ---
    def load(self, rows: Iterable[Dict[str, object]], warnings: Optional[List[str]] = None,
             source_rows: Optional[int] = None) -> LoadSummary:
        collected = list(warnings or [])
        records: List[TaskRecord] = []
        seen = set()
        for pos, row in enumerate(rows, start=1):
            try:
                task_id = normalize_task_id(row.get("task_id"), numeric=self.numeric_ids)
            except ValueError as exc:
                collected.append(f"Skipped task #{pos}: {exc}")
                continue
            if task_id in seen:
                collected.append(f"Skipped task #{pos}: duplicate TaskID {task_id!r}")
                continue
            seen.add(task_id)
            data = dict(row)
            data["task_id"] = task_id
            records.append(TaskRecord(**data))
        self._tasks = records
        self._recompute_next_id()
        self._tasks.sort(key=task_sort_key)
        self.dirty = False
        for warning in collected:
            logger.warning(warning)
        if not records and source_rows:
            message = "No valid tasks loaded. Check CSV format."
        else:
            message = f"Loaded {len(records)} tasks successfully."
        if collected:
            message += f" ({len(collected)} warning{'s' if len(collected) != 1 else ''})"
        self._notify("load")
        return LoadSummary(loaded=len(records), warnings=collected, message=message)

    def add(self) -> TaskRecord:
        task = TaskRecord(task_id=str(self._next_numeric_id), assigned_user=self._user_provider())
        self._tasks.append(task)
        self._next_numeric_id += 1
        self._mark_dirty("add")
        return task

    def remove(self, task_id: str) -> bool:
        task = self.get(task_id)
        if task is None:
            return False
        self._tasks.remove(task)
        self._recompute_next_id()
        self._mark_dirty("remove")
        return True

    def set_field(self, task_id: str, name: str, value: object) -> EditResult:
        if name not in EDITABLE_FIELDS:
            return EditResult(False, f"Unknown field: {name}", task_id)
        if name == "task_id":
            return self.set_id(task_id, value)
        task = self.get(task_id)
        if task is None:
            return EditResult(False, f"Task {task_id} not found")
        try:
            normalized = TaskRecord.validate_field(name, value)
        except ValueError as exc:
            return EditResult(False, str(exc), task_id)
        setattr(task, name, normalized)
        self._mark_dirty("edit")
        return EditResult(True, f"Task {task_id}: {FIELD_LABELS[name]} updated", task_id)

    def set_id(self, old_id: str, new_id: object) -> EditResult:
        task = self.get(old_id)
        if task is None:
            return EditResult(False, f"Task {old_id} not found")
        try:
            candidate = normalize_task_id(new_id, numeric=self.numeric_ids)
        except ValueError as exc:
            return EditResult(False, str(exc), old_id)
        other = self.get(candidate)
        if other is not None and other is not task:
            return EditResult(False, f"TaskID {candidate} is already used by another task", old_id)
        task.task_id = candidate
        self._recompute_next_id()
        self._mark_dirty("edit")
        return EditResult(True, f"TaskID changed from {old_id} to {candidate}", candidate)

    def sort_by_id(self) -> None:
        self._tasks.sort(key=task_sort_key)
        self._notify("sort")

    def mark_clean(self) -> None:
        self.dirty = False
        self._notify("clean")


# -----------------------------
# Heat map
# -----------------------------
HEAT_LEVELS = ("completed", "overdue", "due_today", "urgent", "in_progress", "default")

DEFAULT_HEAT_PALETTE: Dict[str, str] = {
    'completed': 'bg:#87ceeb #000000',    # sky blue
    'overdue': 'bg:#ff0000 #ffffff',      # red
    'due_today': 'bg:#ffff00 #000000',    # yellow
    'urgent': 'bg:#ffa500 #000000',       # orange
    'in_progress': 'bg:#90ee90 #000000',  # light green
    'default': 'bg:#d3d3d3 #000000',      # light gray
}


def heat_level(status: str, due_date: Optional[dt.date], priority: str, today: dt.date) -> str:
    if status == "Completed":
        return "completed"
    if due_date is not None:
        if due_date < today:
            return "overdue"
        if due_date == today:
            return "due_today"
    if priority == "Urgent":
        return "urgent"
    if status == "In Progress":
        return "in_progress"
    return "default"


def color_for_task(task: TaskRecord, today: dt.date, palette: Optional[Dict[str, str]] = None) -> str:
    level = heat_level(task.status, task.due_date, task.priority, today)
    if palette and level in palette:
        return palette[level]
    return DEFAULT_HEAT_PALETTE[level]


# -----------------------------
# Config
# -----------------------------
STORAGE_POLICIES = ("fixed", "archive")
ID_POLICIES = ("alphanumeric", "numeric")
DEFAULT_STATE_PATH = os.path.expanduser("~/.csv_task_tracker.ui.json")


@dataclass
class Config:
    storage: str = "fixed"
    csv_path: str = "tasks.csv"
    archive_dir: str = "CSV"
    id_policy: str = "alphanumeric"
    require_priority: bool = False
    hide_completed: bool = False
    palette: Dict[str, str] = field(default_factory=dict)
    state_path: Optional[str] = None

    @property
    def numeric_ids(self) -> bool:
        return self.id_policy == "numeric"


def _choice(raw: dict, key: str, choices: Tuple[str, ...], default: str) -> str:
    value = str(raw.get(key) or default).strip().lower()
    if value not in choices:
        raise ValueError(f"Config: '{key}' must be one of {', '.join(choices)} (got {value!r})")
    return value


def load_config(path: Optional[str]) -> Config:
    if not path:
        return Config()
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config: top level must be a mapping.")
    palette_raw = raw.get("palette") or {}
    if not isinstance(palette_raw, dict):
        raise ValueError("Config: 'palette' must be a mapping of heat level to style.")
    palette: Dict[str, str] = {}
    for key, value in palette_raw.items():
        if key not in HEAT_LEVELS:
            raise ValueError(f"Config: unknown palette entry {key!r}; expected one of {', '.join(HEAT_LEVELS)}")
        palette[key] = str(value)
    return Config(
        storage=_choice(raw, "storage", STORAGE_POLICIES, "fixed"),
        csv_path=str(raw.get("csv_path") or "tasks.csv"),
        archive_dir=str(raw.get("archive_dir") or "CSV"),
        id_policy=_choice(raw, "id_policy", ID_POLICIES, "alphanumeric"),
        require_priority=bool(raw.get("require_priority", False)),
        hide_completed=bool(raw.get("hide_completed", False)),
        palette=palette,
        state_path=os.path.expanduser(str(raw["state_path"])) if raw.get("state_path") else None,
    )


def setup_logging(log_level: str = 'ERROR', log_path: Optional[str] = None) -> logging.Logger:
    """Attach a rotating file handler; the handler level follows ``log_level``."""
    if log_path is None:
        log_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'csv_task_tracker.log')
    # Reset handlers so repeated calls (tests, --log-level) don't stack output.
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.setLevel(logging.DEBUG)
    fh = RotatingFileHandler(log_path, maxBytes=2000000, backupCount=2, encoding='utf-8')
    lvl = getattr(logging, str(log_level).upper(), None)
    fh.setLevel(lvl if isinstance(lvl, int) else logging.ERROR)
    fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s'))
    logger.addHandler(fh)
    return logger


# -----------------------------
# Persistence
# -----------------------------
ARCHIVE_NAME_RE = re.compile(r"^tasks_\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2}\.csv$")
ARCHIVE_STAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"


@dataclass
class LoadReport:
    path: Optional[Path]
    loaded: int
    warnings: List[str]
    message: str
    found: bool = True


def _current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


def _atomic_write(path: Path, text: str) -> None:
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(text)
        if path.exists():
            shutil.copymode(str(path), tmp)
        else:
            os.chmod(tmp, 0o666 & ~_current_umask())
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp)
        raise


class PersistenceGateway:
    """Picks the CSV file to read and where to write, per ``cfg.storage``.

    OSError and CsvFormatError propagate to the caller untouched; a failed
    save never clears the store's dirty flag.
    """

    def __init__(self, cfg: Config, base_dir: Optional[os.PathLike] = None,
                 clock: Callable[[], dt.datetime] = dt.datetime.now):
        self.cfg = cfg
        self.base_dir = Path(base_dir) if base_dir is not None else Path.cwd()
        self._clock = clock

    @property
    def archive_mode(self) -> bool:
        return self.cfg.storage == "archive"

    @property
    def fixed_path(self) -> Path:
        return self.base_dir / self.cfg.csv_path

    @property
    def archive_dir(self) -> Path:
        return self.base_dir / self.cfg.archive_dir

    def latest_archive(self) -> Optional[Path]:
        directory = self.archive_dir
        if not directory.is_dir():
            return None
        names = [p for p in directory.iterdir() if p.is_file() and ARCHIVE_NAME_RE.match(p.name)]
        if not names:
            return None
        return max(names, key=lambda p: p.name)

    def locate(self) -> Optional[Path]:
        if self.archive_mode:
            return self.latest_archive()
        path = self.fixed_path
        return path if path.is_file() else None

    def next_archive_path(self) -> Path:
        stamp = self._clock().replace(microsecond=0)
        path = self.archive_dir / f"tasks_{stamp.strftime(ARCHIVE_STAMP_FORMAT)}.csv"
        while path.exists():
            stamp += dt.timedelta(seconds=1)
            path = self.archive_dir / f"tasks_{stamp.strftime(ARCHIVE_STAMP_FORMAT)}.csv"
        return path

    def load(self, store: TaskStore) -> LoadReport:
        path = self.locate()
        if path is None:
            if self.archive_mode:
                message = f"No CSV files found in {self.archive_dir}"
            else:
                message = f"CSV file not found at {self.fixed_path}"
            logger.info(message)
            return LoadReport(path=None, loaded=0, warnings=[], message=message, found=False)
        try:
            text = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise CsvFormatError(f"CSV file is not valid UTF-8: {path.name} ({exc.reason} at byte {exc.start})") from exc
        result = decode_tasks(text, require_priority=self.cfg.require_priority, numeric_ids=store.numeric_ids)
        summary = store.load(result.rows, warnings=result.warnings, source_rows=result.data_rows)
        logger.info("Loaded %d tasks from %s (%d warnings)", summary.loaded, path, len(summary.warnings))
        return LoadReport(path=path, loaded=summary.loaded, warnings=summary.warnings, message=summary.message)

    def save(self, store: TaskStore) -> Path:
        text = encode_tasks(store.tasks)
        if self.archive_mode:
            self.archive_dir.mkdir(parents=True, exist_ok=True)
            path = self.next_archive_path()
        else:
            path = self.fixed_path
        _atomic_write(path, text)
        store.mark_clean()
        logger.info("Saved %d tasks to %s", len(store), path)
        return path


# -----------------------------
# Controller (what the UI calls)
# -----------------------------
CLOSE_DECISIONS = ("save", "discard", "cancel")


@dataclass
class CloseResult:
    exit: bool
    message: str


class TrackerController:
    def __init__(self, store: TaskStore, gateway: PersistenceGateway, hide_completed: bool = False):
        self.store = store
        self.gateway = gateway
        self.hide_completed = hide_completed
        self.selected_id: Optional[str] = None
        self.status_line = ""
        self.last_warnings: List[str] = []

    def _report(self, message: str) -> str:
        self.status_line = message
        return message

    @property
    def tasks(self) -> List[TaskRecord]:
        return self.store.tasks

    @property
    def dirty(self) -> bool:
        return self.store.dirty

    @property
    def has_selection(self) -> bool:
        return self.selected_id is not None and self.store.get(self.selected_id) is not None

    def filtered_view(self) -> FilteredView:
        return self.store.filtered_view(self.hide_completed)

    def subscribe(self, callback: Callable[[str], None]) -> Callable[[], None]:
        return self.store.subscribe(callback)

    def on_select(self, task_id: Optional[str]) -> None:
        self.selected_id = task_id if self.store.get(task_id) is not None else None

    def on_load(self) -> str:
        try:
            report = self.gateway.load(self.store)
        except CsvFormatError as exc:
            logger.error("Load aborted: %s", exc)
            return self._report(str(exc))
        except OSError as exc:
            logger.error("Load failed: %s", exc)
            return self._report(f"Error loading tasks: {exc}")
        self.last_warnings = list(report.warnings)
        if not self.has_selection:
            self.selected_id = None
        return self._report(report.message)

    def on_add(self) -> str:
        task = self.store.add()
        self.selected_id = task.task_id
        return self._report(f"Added task {task.task_id}.")

    def on_save(self) -> str:
        try:
            path = self.gateway.save(self.store)
        except OSError as exc:
            logger.error("Save failed: %s", exc)
            return self._report(f"Error saving tasks: {exc}")
        return self._report(f"Tasks saved successfully ({path.name}).")

    def on_delete_selected(self, task_id: Optional[str] = None, confirmed: bool = False) -> str:
        target = task_id if task_id is not None else self.selected_id
        if target is None:
            return self._report("No task selected.")
        if self.store.get(target) is None:
            return self._report(f"Task {target} not found.")
        if not confirmed:
            return self._report("Delete cancelled.")
        self.store.remove(target)
        if self.selected_id == target:
            self.selected_id = None
        return self._report("Task deleted successfully.")

    def on_toggle_hide_completed(self, hide: bool) -> str:
        self.hide_completed = bool(hide)
        selected = self.store.get(self.selected_id)
        if self.hide_completed and selected is not None and selected.is_completed:
            self.selected_id = None
        return self._report("Hiding completed tasks." if self.hide_completed else "Showing all tasks.")

    def on_field_edit(self, task_id: str, field_name: str, value: object) -> str:
        result = self.store.set_field(task_id, field_name, value)
        if result.accepted and self.selected_id == task_id:
            self.selected_id = result.task_id
        return self._report(result.message)

    def on_close(self, decision: Optional[str] = None) -> CloseResult:
        if not self.dirty:
            return CloseResult(True, "")
        if decision is None:
            return CloseResult(False, self._report("Unsaved changes: (s)ave, (d)iscard or (c)ancel?"))
        if decision == "save":
            message = self.on_save()
            return CloseResult(not self.dirty, message)
        if decision == "discard":
            return CloseResult(True, self._report("Changes discarded."))
        if decision == "cancel":
            return CloseResult(False, self._report("Close cancelled."))
        raise ValueError(f"Unknown close decision: {decision!r}")


# -----------------------------
# UI helpers (fragments only)
# -----------------------------
GRID_COLUMNS: List[Tuple[str, str, int]] = [
    ("task_id", "ID", 6),
    ("name", "Task", 28),
    ("status", "Status", 11),
    ("assigned_user", "Assigned", 12),
    ("due_date", "Due", 10),
    ("priority", "Priority", 8),
    ("notes", "Notes", 32),
]


def _sanitize_cell_text(s: Optional[str]) -> str:
    return (s or "").replace("\r\n", " ").replace("\n", " ").replace("\r", " ")


def _truncate(s: str, maxlen: int) -> str:
    """Cut ``s`` to ``maxlen`` display cells, ending with an ellipsis when cut."""
    s = _sanitize_cell_text(s)
    if maxlen <= 0:
        return ""
    if get_cwidth(s) <= maxlen:
        return s
    out: List[str] = []
    width = 0
    for ch in s:
        ch_w = get_cwidth(ch)
        if width + ch_w + 1 > maxlen:
            break
        out.append(ch)
        width += ch_w
    return "".join(out) + "…"


def _pad_display(text: Optional[str], width: int) -> str:
    raw = _truncate(text or "", width)
    return raw + " " * max(0, width - get_cwidth(raw))


def build_fragments(tasks: List[TaskRecord], today: dt.date, selected_index: Optional[int] = None,
                    column_index: Optional[int] = None,
                    palette: Optional[Dict[str, str]] = None) -> List[Tuple[str, str]]:
    """Return (style, text) tuples for the task grid."""
    header = "  ".join(_pad_display(title, width) for _, title, width in GRID_COLUMNS)
    frags: List[Tuple[str, str]] = [("class:table.header", header), ("", "\n")]
    if not tasks:
        frags.extend([("bold", "No tasks to show."), ("", " Press "), ("bold", "a"), ("", " to add one.")])
        return frags
    for idx, task in enumerate(tasks):
        row_style = color_for_task(task, today, palette)
        for col, (name, _title, width) in enumerate(GRID_COLUMNS):
            if col:
                frags.append((row_style, "  "))
            style = row_style
            if idx == selected_index:
                style = f"{row_style} bold"
                if col == column_index:
                    style = f"{row_style} bold reverse"
            frags.append((style, _pad_display(task.cell_text(name), width)))
        frags.append(("", "\n"))
    frags.pop()
    return frags


UI_STYLE: Dict[str, str] = {
    'title': 'bold #ffd75f',
    'table.header': 'bold #ffd75f',
    'status': 'reverse',
    'status.dirty': 'reverse bold #ff8787',
}


# -----------------------------
# TUI
# -----------------------------
def run_ui(controller: TrackerController, cfg: Config, *, today: Optional[dt.date] = None,
           state_path: Optional[str] = None, input=None, output=None, run: bool = True) -> Application:
    """Full-screen grid over the controller's filtered view.

    Modes: 'normal', 'edit' (typing a cell value), 'confirm-delete' and
    'confirm-close'. Returns the Application (already finished when ``run``).
    """
    mode = 'normal'
    current_index = 0
    column_index = 1
    v_offset = 0
    edit_buffer = ""
    edit_target: Optional[Tuple[str, str]] = None
    status_line = controller.status_line

    if state_path is None:
        state_path = cfg.state_path or DEFAULT_STATE_PATH

    def _load_state() -> dict:
        try:
            with open(state_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def _save_state() -> None:
        data = {
            'hide_completed': controller.hide_completed,
            'current_index': current_index,
            'column_index': column_index,
        }
        try:
            d = os.path.dirname(state_path)
            if d and not os.path.isdir(d):
                os.makedirs(d, exist_ok=True)
            with open(state_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
        except OSError:
            logger.warning("Unable to write UI state to %s", state_path, exc_info=True)

    _st = _load_state()
    if 'hide_completed' in _st:
        controller.hide_completed = bool(_st['hide_completed'])
    try:
        current_index = max(0, int(_st.get('current_index', current_index) or 0))
        column_index = int(_st.get('column_index', column_index) or 0) % len(GRID_COLUMNS)
    except (TypeError, ValueError):
        current_index, column_index = 0, 1

    app: Optional[Application] = None

    def invalidate() -> None:
        if app is not None:
            app.invalidate()

    controller.subscribe(lambda _event: invalidate())

    def visible_rows() -> List[TaskRecord]:
        return list(controller.filtered_view())

    def sync_selection() -> None:
        nonlocal current_index
        rows = visible_rows()
        if not rows:
            current_index = 0
            controller.on_select(None)
            return
        current_index = max(0, min(current_index, len(rows) - 1))
        controller.on_select(rows[current_index].task_id)

    def select_task(task_id: Optional[str]) -> None:
        nonlocal current_index
        for idx, task in enumerate(visible_rows()):
            if task.task_id == task_id:
                current_index = idx
                break
        sync_selection()

    def selected_task() -> Optional[TaskRecord]:
        return controller.store.get(controller.selected_id)

    def move(delta: int) -> None:
        nonlocal current_index
        current_index += delta
        sync_selection()
        invalidate()

    def table_height() -> int:
        if app is None:
            return 20
        try:
            return max(1, app.output.get_size().rows - 3)
        except Exception:
            return 20

    def build_table() -> List[Tuple[str, str]]:
        nonlocal v_offset
        rows = visible_rows()
        height = table_height()
        if current_index < v_offset:
            v_offset = current_index
        elif current_index >= v_offset + height:
            v_offset = current_index - height + 1
        page = rows[v_offset:v_offset + height]
        selected = current_index - v_offset if rows else None
        return build_fragments(page, today or dt.date.today(), selected, column_index, cfg.palette)

    def build_status_bar() -> List[Tuple[str, str]]:
        if mode == 'edit' and edit_target is not None:
            text = f" Edit {FIELD_LABELS[edit_target[1]]}: {edit_buffer}"
        else:
            text = f" {status_line}" if status_line else " "
        flags = []
        if controller.hide_completed:
            flags.append("hide completed")
        flags.append(f"{len(visible_rows())}/{len(controller.store)} tasks")
        right = " | ".join(flags) + " "
        if controller.dirty:
            return [("class:status", text + "  "), ("class:status.dirty", "[modified]"), ("class:status", "  " + right)]
        return [("class:status", text + "  " + right)]

    title_window = Window(height=1, content=FormattedTextControl(
        text=lambda: [("class:title", " Tasks  (a add, e edit, x delete, c hide done, s save, q quit)")]))
    table_window = Window(content=FormattedTextControl(text=lambda: build_table()), wrap_lines=False,
                          always_hide_cursor=True)
    status_window = Window(height=1, content=FormattedTextControl(text=lambda: build_status_bar()))
    container = HSplit([title_window, table_window, status_window])

    kb = KeyBindings()
    is_normal = Condition(lambda: mode == 'normal')
    is_edit = Condition(lambda: mode == 'edit')
    is_confirm_delete = Condition(lambda: mode == 'confirm-delete')
    is_confirm_close = Condition(lambda: mode == 'confirm-close')

    def set_status(message: str) -> None:
        nonlocal status_line
        status_line = message
        invalidate()

    @kb.add('j', filter=is_normal)
    @kb.add('down', filter=is_normal)
    def _(event):
        move(1)

    @kb.add('k', filter=is_normal)
    @kb.add('up', filter=is_normal)
    def _(event):
        move(-1)

    @kb.add('h', filter=is_normal)
    @kb.add('left', filter=is_normal)
    def _(event):
        nonlocal column_index
        column_index = (column_index - 1) % len(GRID_COLUMNS)
        invalidate()

    @kb.add('l', filter=is_normal)
    @kb.add('right', filter=is_normal)
    def _(event):
        nonlocal column_index
        column_index = (column_index + 1) % len(GRID_COLUMNS)
        invalidate()

    @kb.add('a', filter=is_normal)
    def _(event):
        message = controller.on_add()
        select_task(controller.selected_id)
        set_status(message)

    @kb.add('c', filter=is_normal)
    def _(event):
        message = controller.on_toggle_hide_completed(not controller.hide_completed)
        sync_selection()
        set_status(message)

    @kb.add('s', filter=is_normal)
    @kb.add('c-s', filter=is_normal)
    def _(event):
        set_status(controller.on_save())

    @kb.add('r', filter=is_normal)
    def _(event):
        if controller.dirty:
            set_status("Unsaved changes; save (s) before reloading.")
            return
        message = controller.on_load()
        sync_selection()
        set_status(message)

    # delete with confirmation
    @kb.add('x', filter=is_normal)
    @kb.add('delete', filter=is_normal)
    def _(event):
        nonlocal mode
        task = selected_task()
        if task is None:
            set_status("No task selected.")
            return
        mode = 'confirm-delete'
        set_status(f"Delete task '{task.name}'? (y/n)")

    @kb.add('y', filter=is_confirm_delete)
    def _(event):
        nonlocal mode
        mode = 'normal'
        message = controller.on_delete_selected(confirmed=True)
        sync_selection()
        set_status(message)

    @kb.add('n', filter=is_confirm_delete)
    @kb.add('escape', filter=is_confirm_delete)
    def _(event):
        nonlocal mode
        mode = 'normal'
        set_status(controller.on_delete_selected(confirmed=False))

    # inline cell editor
    @kb.add('e', filter=is_normal)
    @kb.add('enter', filter=is_normal)
    def _(event):
        nonlocal mode, edit_buffer, edit_target
        task = selected_task()
        if task is None:
            set_status("No task selected.")
            return
        name = GRID_COLUMNS[column_index][0]
        edit_target = (task.task_id, name)
        edit_buffer = task.cell_text(name)
        mode = 'edit'
        invalidate()

    @kb.add(Keys.Any, filter=is_edit)
    def _(event):
        nonlocal edit_buffer
        ch = event.data or ''
        if not ch or not ch.isprintable():
            return
        edit_buffer += ch
        invalidate()

    @kb.add('backspace', filter=is_edit)
    def _(event):
        nonlocal edit_buffer
        edit_buffer = edit_buffer[:-1]
        invalidate()

    @kb.add('enter', filter=is_edit)
    def _(event):
        nonlocal mode, edit_target
        mode = 'normal'
        if edit_target is None:
            return
        task_id, name = edit_target
        edit_target = None
        message = controller.on_field_edit(task_id, name, edit_buffer)
        select_task(controller.selected_id)
        set_status(message)

    @kb.add('escape', filter=is_edit)
    def _(event):
        nonlocal mode, edit_target, edit_buffer
        mode = 'normal'
        edit_target = None
        edit_buffer = ""
        set_status("Edit cancelled")

    # quitting
    def finish(event, result: CloseResult) -> None:
        nonlocal mode
        if result.exit:
            _save_state()
            event.app.exit()
            return
        mode = 'confirm-close' if controller.dirty else 'normal'
        set_status(result.message)

    @kb.add('q', filter=is_normal)
    def _(event):
        finish(event, controller.on_close())

    @kb.add('s', filter=is_confirm_close)
    def _(event):
        finish(event, controller.on_close('save'))

    @kb.add('d', filter=is_confirm_close)
    def _(event):
        finish(event, controller.on_close('discard'))

    @kb.add('c', filter=is_confirm_close)
    @kb.add('escape', filter=is_confirm_close)
    def _(event):
        nonlocal mode
        result = controller.on_close('cancel')
        mode = 'normal'
        set_status(result.message)

    sync_selection()
    app = Application(layout=Layout(container), key_bindings=kb, full_screen=True,
                      style=Style.from_dict(UI_STYLE), input=input, output=output)
    if run:
        app.run()
    return app


# -----------------------------
# CLI
# -----------------------------
def main(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="CSV-backed terminal task tracker")
    ap.add_argument("--config", help="Path to YAML config (optional)")
    ap.add_argument("--csv", help="CSV file for fixed storage (overrides csv_path)")
    ap.add_argument("--storage", choices=STORAGE_POLICIES, help="fixed file or timestamped archive")
    ap.add_argument("--log-level", default="ERROR", help="File log level (DEBUG, INFO, WARNING, ERROR)")
    ap.add_argument("--log-file", help="Log file path (default: next to this script)")
    ap.add_argument("--no-ui", action="store_true", help="Load tasks, print a summary and exit")
    args = ap.parse_args(argv)

    try:
        cfg = load_config(args.config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Failed to read config: {e}", file=sys.stderr)
        sys.exit(2)
    if args.csv:
        cfg.csv_path = args.csv
    if args.storage:
        cfg.storage = args.storage

    setup_logging(args.log_level, args.log_file)
    store = TaskStore(numeric_ids=cfg.numeric_ids)
    controller = TrackerController(store, PersistenceGateway(cfg), hide_completed=cfg.hide_completed)
    message = controller.on_load()

    if args.no_ui:
        print(message)
        tasks = store.tasks
        done_ct = sum(1 for t in tasks if t.is_completed)
        print(f"Tasks: {len(tasks)} (completed {done_ct})")
        for warning in controller.last_warnings:
            print(f"warning: {warning}")
        return

    run_ui(controller, cfg)


if __name__ == "__main__":
    main()
