"""Scheduled jobs: a small cron scheduler, the job catalogue and the job run log."""

from __future__ import annotations

import calendar
import itertools
import logging
import re
import sqlite3
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional, Union

from identsvc.database import Database, Table
from identsvc.logs import LogPage
from identsvc.models import PageRequest, ServiceError
from identsvc.tasks import TaskRegistry

logger = logging.getLogger(__name__)

JOB_STATUS_RUNNING = 0
JOB_STATUS_STOPPED = 1
MISFIRE_REPEAT = 1

_INT = "INTEGER NOT NULL DEFAULT 0"
_TEXT = "TEXT NOT NULL DEFAULT ''"
_TIME = "DATETIME"
_SERIAL_KEY = "INTEGER PRIMARY KEY AUTOINCREMENT"

JOB_TABLE = Table(
    name="sys_job",
    columns=(
        ("job_id", _SERIAL_KEY),
        ("job_name", _TEXT),
        ("job_params", _TEXT),
        ("job_group", _TEXT),
        ("invoke_target", _TEXT),
        ("cron_expression", _TEXT),
        ("misfire_policy", _INT),
        ("concurrent", _INT),
        ("status", _INT),
        ("created_by", _TEXT),
        ("updated_by", _TEXT),
        ("remark", _TEXT),
        ("created_at", _TIME),
        ("updated_at", _TIME),
    ),
    primary_key="job_id",
)

JOB_LOG_TABLE = Table(
    name="sys_job_log",
    columns=(
        ("id", _SERIAL_KEY),
        ("target_name", _TEXT),
        ("created_at", _TIME),
        ("result", _TEXT),
    ),
)


def _ensure_tables(db: Database, *tables: Table) -> None:
    for table in tables:
        db.execute(table.create_statement())
        db.tables.setdefault(table.name, table)


# -- schedules -------------------------------------------------------------

_PREDEFINED = {
    "@yearly": "0 0 0 1 1 *",
    "@annually": "0 0 0 1 1 *",
    "@monthly": "0 0 0 1 * *",
    "@weekly": "0 0 0 * * 0",
    "@daily": "0 0 0 * * *",
    "@midnight": "0 0 0 * * *",
    "@hourly": "0 0 * * * *",
}
_MONTH_NAMES = {name.lower(): i for i, name in enumerate(calendar.month_abbr) if name}
_DAY_NAMES = {"sun": 0, "mon": 1, "tue": 2, "wed": 3, "thu": 4, "fri": 5, "sat": 6}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def _parse_duration(text: str) -> timedelta:
    text = text.strip()
    if not text or _DURATION_PART.sub("", text):
        raise ValueError(f"invalid duration: {text!r}")
    seconds = sum(
        float(amount) * _DURATION_UNITS[unit] for amount, unit in _DURATION_PART.findall(text)
    )
    if seconds <= 0:
        raise ValueError(f"duration must be positive: {text!r}")
    return timedelta(seconds=seconds)


@dataclass(frozen=True)
class _Every:
    interval: timedelta

    def next(self, after: datetime) -> datetime:
        return after + self.interval


def _parse_field(text: str, low: int, high: int, names: Mapping[str, int]) -> frozenset[int]:
    def value(token: str) -> int:
        token = token.strip().lower()
        if token in names:
            return names[token]
        return int(token)

    values: set[int] = set()
    for part in text.split(","):
        part = part.strip().lower()
        step = 1
        stepped = "/" in part
        if stepped:
            part, step_text = part.split("/", 1)
            step = int(step_text)
            if step <= 0:
                raise ValueError(f"invalid step in {text!r}")
        if part in ("*", "?"):
            start, end = low, high
        elif "-" in part:
            first, last = part.split("-", 1)
            start, end = value(first), value(last)
        else:
            start = value(part)
            end = high if stepped else start
        if not low <= start <= end <= high:
            raise ValueError(f"value out of range in {text!r}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class _Cron:
    seconds: frozenset[int]
    minutes: frozenset[int]
    hours: frozenset[int]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]

    @classmethod
    def parse(cls, expression: str) -> _Cron:
        parts = expression.split()
        if len(parts) == 5:
            parts.insert(0, "0")
        if len(parts) != 6:
            raise ValueError(f"invalid cron pattern: {expression!r}")
        try:
            weekdays = _parse_field(parts[5], 0, 7, _DAY_NAMES)
            return cls(
                seconds=_parse_field(parts[0], 0, 59, {}),
                minutes=_parse_field(parts[1], 0, 59, {}),
                hours=_parse_field(parts[2], 0, 23, {}),
                days=_parse_field(parts[3], 1, 31, {}),
                months=_parse_field(parts[4], 1, 12, _MONTH_NAMES),
                weekdays=frozenset(day % 7 for day in weekdays),
            )
        except ValueError as exc:
            raise ValueError(f"invalid cron pattern {expression!r}: {exc}") from exc

    def next(self, after: datetime) -> datetime:
        moment = after.replace(microsecond=0) + timedelta(seconds=1)
        limit = moment.year + 5
        while moment.year <= limit:
            if moment.month not in self.months:
                year, month = divmod(moment.month, 12)
                moment = datetime(moment.year + year, month + 1, 1)
                continue
            if moment.day not in self.days or (moment.weekday() + 1) % 7 not in self.weekdays:
                moment = moment.replace(hour=0, minute=0, second=0) + timedelta(days=1)
                continue
            if moment.hour not in self.hours:
                moment = moment.replace(minute=0, second=0) + timedelta(hours=1)
                continue
            if moment.minute not in self.minutes:
                moment = moment.replace(second=0) + timedelta(minutes=1)
                continue
            if moment.second not in self.seconds:
                moment += timedelta(seconds=1)
                continue
            return moment
        raise ValueError("no time matches the cron pattern")


_Schedule = Union[_Every, _Cron]


def _parse_pattern(pattern: str) -> _Schedule:
    text = pattern.strip()
    lowered = text.lower()
    if lowered.startswith("@every"):
        return _Every(_parse_duration(text[len("@every"):]))
    if lowered in _PREDEFINED:
        text = _PREDEFINED[lowered]
    elif lowered.startswith("@"):
        raise ValueError(f"unknown pattern: {pattern!r}")
    schedule = _Cron.parse(text)
    schedule.next(datetime.now())
    return schedule


class EntryStatus(Enum):
    READY = "ready"
    STOPPED = "stopped"


@dataclass(eq=False)
class ScheduledJob:
    """One entry of the scheduler."""

    name: str
    pattern: str
    func: Callable[[], Any]
    singleton: bool
    once: bool
    status: EntryStatus = EntryStatus.READY
    next_time: Optional[datetime] = None
    _schedule: Optional[_Schedule] = field(default=None, repr=False)
    _active: int = field(default=0, repr=False)


class Scheduler:
    """Runs functions on cron patterns or fixed intervals on background threads."""

    def __init__(self) -> None:
        self._entries: dict[str, ScheduledJob] = {}
        self._cond = threading.Condition()
        self._closed = False
        self._names = itertools.count(1)
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> Scheduler:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def add_singleton(self, pattern: str, func: Callable[[], Any], name: Optional[str] = None) -> ScheduledJob:
        """Repeat ``func`` on ``pattern``; a run is skipped while the previous one is busy."""
        return self._add(pattern, func, name, singleton=True, once=False)

    def add_once(self, pattern: str, func: Callable[[], Any], name: Optional[str] = None) -> ScheduledJob:
        """Run ``func`` once at the next time ``pattern`` fires, then forget it."""
        return self._add(pattern, func, name, singleton=False, once=True)

    def search(self, name: str) -> Optional[ScheduledJob]:
        with self._cond:
            return self._entries.get(name)

    def start(self, name: str) -> bool:
        """Let the named entry fire again; False if there is no such entry."""
        with self._cond:
            entry = self._entries.get(name)
            if entry is None:
                return False
            entry.status = EntryStatus.READY
            now = datetime.now()
            if entry.next_time is None or entry.next_time < now:
                entry.next_time = entry._schedule.next(now)
            self._cond.notify_all()
            return True

    def remove(self, name: str) -> bool:
        with self._cond:
            removed = self._entries.pop(name, None) is not None
            self._cond.notify_all()
            return removed

    def close(self) -> None:
        """Stop the scheduler thread; running functions finish on their own."""
        with self._cond:
            self._closed = True
            self._entries.clear()
            self._cond.notify_all()
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()

    # -- helpers ---------------------------------------------------------

    def _add(
        self, pattern: str, func: Callable[[], Any], name: Optional[str], singleton: bool, once: bool
    ) -> ScheduledJob:
        schedule = _parse_pattern(pattern)
        with self._cond:
            if self._closed:
                raise RuntimeError("scheduler is closed")
            if name is None:
                name = f"cron-{next(self._names)}"
                while name in self._entries:
                    name = f"cron-{next(self._names)}"
            if name in self._entries:
                raise ValueError(f"duplicate job name: {name}")
            entry = ScheduledJob(
                name=name,
                pattern=pattern,
                func=func,
                singleton=singleton,
                once=once,
                next_time=schedule.next(datetime.now()),
                _schedule=schedule,
            )
            self._entries[name] = entry
            if self._thread is None:
                self._thread = threading.Thread(target=self._loop, name="scheduler", daemon=True)
                self._thread.start()
            self._cond.notify_all()
            return entry

    def _loop(self) -> None:
        with self._cond:
            while not self._closed:
                now = datetime.now()
                for entry in list(self._entries.values()):
                    if entry.status is not EntryStatus.READY or entry.next_time > now:
                        continue
                    if entry.once:
                        if self._entries.get(entry.name) is entry:
                            del self._entries[entry.name]
                    else:
                        try:
                            entry.next_time = entry._schedule.next(now)
                        except ValueError:
                            logger.warning("removing job %s: no further fire time", entry.name)
                            self._entries.pop(entry.name, None)
                    self._dispatch(entry)
                now = datetime.now()
                waits = [
                    (entry.next_time - now).total_seconds()
                    for entry in self._entries.values()
                    if entry.status is EntryStatus.READY
                ]
                timeout = max(min(waits), 0.0) if waits else None
                self._cond.wait(timeout)

    def _dispatch(self, entry: ScheduledJob) -> None:
        if entry.singleton and entry._active:
            return
        entry._active += 1

        def run() -> None:
            try:
                entry.func()
            except Exception:
                logger.exception("scheduled job %s failed", entry.name)
            finally:
                with self._cond:
                    entry._active -= 1

        threading.Thread(target=run, name=f"job-{entry.name}", daemon=True).start()


# -- job catalogue ---------------------------------------------------------


@dataclass
class Job:
    job_id: int = 0
    job_name: str = ""
    job_params: str = ""
    job_group: str = ""
    invoke_target: str = ""
    cron_expression: str = ""
    misfire_policy: int = 0
    concurrent: int = 0
    status: int = 0
    created_by: str = ""
    updated_by: str = ""
    remark: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class JobRequest:
    """Data for adding or editing a job."""

    job_name: str
    invoke_target: str
    cron_expression: str
    job_params: str = ""
    job_group: str = ""
    misfire_policy: int = 0
    status: int = 0
    remark: str = ""


@dataclass
class JobLog:
    id: int = 0
    target_name: str = ""
    created_at: Optional[datetime] = None
    result: str = ""


def _row_to_job(row: Mapping[str, Any]) -> Job:
    return Job(
        job_id=int(row["job_id"]),
        job_name=row.get("job_name") or "",
        job_params=row.get("job_params") or "",
        job_group=row.get("job_group") or "",
        invoke_target=row.get("invoke_target") or "",
        cron_expression=row.get("cron_expression") or "",
        misfire_policy=int(row.get("misfire_policy") or 0),
        concurrent=int(row.get("concurrent") or 0),
        status=int(row.get("status") or 0),
        created_by=str(row.get("created_by") or ""),
        updated_by=str(row.get("updated_by") or ""),
        remark=row.get("remark") or "",
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def _row_to_job_log(row: Mapping[str, Any]) -> JobLog:
    return JobLog(
        id=int(row["id"]),
        target_name=row.get("target_name") or "",
        created_at=row.get("created_at"),
        result=row.get("result") or "",
    )


def _request_to_row(request: JobRequest) -> dict[str, Any]:
    return {
        "job_name": request.job_name,
        "job_params": request.job_params,
        "job_group": request.job_group,
        "invoke_target": request.invoke_target,
        "cron_expression": request.cron_expression,
        "misfire_policy": request.misfire_policy,
        "status": request.status,
        "remark": request.remark,
    }


class JobService:
    """Stores job definitions and drives them through the scheduler."""

    def __init__(self, db: Database, tasks: TaskRegistry, scheduler: Scheduler) -> None:
        self._db = db
        self._tasks = tasks
        self._scheduler = scheduler
        _ensure_tables(db, JOB_TABLE)

    def list(
        self,
        job_name: str = "",
        job_group: str = "",
        status: Union[int, str, None] = None,
        page_num: int = 0,
        page_size: int = 0,
    ) -> LogPage[Job]:
        """One page of jobs ordered by id; the name matches as a substring."""
        conditions: list[str] = []
        params: list[Any] = []
        if job_name:
            conditions.append('"job_name" LIKE ?')
            params.append(f"%{job_name}%")
        if job_group:
            conditions.append('"job_group" = ?')
            params.append(job_group)
        if status not in (None, ""):
            conditions.append('"status" = ?')
            params.append(int(status))
        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        table = f'"{JOB_TABLE.name}"'
        try:
            total = int(self._db.query(f"SELECT COUNT(*) AS n FROM {table}{where}", params)[0]["n"])
        except sqlite3.Error as exc:
            raise ServiceError(f"获取总行数失败: {exc}") from exc
        page = PageRequest(page_num, page_size).normalized()
        try:
            rows = self._db.query(
                f'SELECT * FROM {table}{where} ORDER BY "job_id" ASC LIMIT ? OFFSET ?',
                [*params, page.page_size, page.offset],
            )
        except sqlite3.Error as exc:
            raise ServiceError(f"获取数据失败: {exc}") from exc
        return LogPage(page.page_num, total, [_row_to_job(row) for row in rows])

    def get_by_job_id(self, job_id: int) -> Optional[Job]:
        try:
            rows = self._db.query(
                f'SELECT * FROM "{JOB_TABLE.name}" WHERE "job_id" = ? LIMIT 1', [job_id]
            )
        except sqlite3.Error as exc:
            raise ServiceError(f"获取信息失败: {exc}") from exc
        return _row_to_job(rows[0]) if rows else None

    def add(self, operator_id: str, request: JobRequest) -> int:
        """Store a new job and return its id."""
        row = _request_to_row(request)
        row["created_by"] = operator_id
        try:
            return self._db.insert(JOB_TABLE, row)
        except (ServiceError, sqlite3.Error, ValueError) as exc:
            raise ServiceError(f"添加失败: {exc}") from exc

    def edit(self, operator_id: str, job_id: int, request: JobRequest) -> None:
        row = _request_to_row(request)
        row["updated_by"] = operator_id
        try:
            self._db.update(JOB_TABLE, row, {"job_id": job_id})
        except (ServiceError, sqlite3.Error, ValueError) as exc:
            raise ServiceError(f"修改失败: {exc}") from exc

    def delete(self, job_ids: Sequence[int]) -> None:
        try:
            self._db.delete(JOB_TABLE, {"job_id": list(job_ids)})
        except (sqlite3.Error, ValueError) as exc:
            raise ServiceError(f"删除失败: {exc}") from exc

    def start(self, job_id: int) -> bool:
        """Schedule the job; False if it is missing or could not be started."""
        return self._apply(job_id, self.job_start)

    def stop(self, job_id: int) -> bool:
        """Unschedule the job and mark it stopped; False if that failed."""
        return self._apply(job_id, self._job_stop)

    def run(self, job_id: int) -> bool:
        """Run the job's task once, about a second from now."""
        return self._apply(job_id, self._job_run)

    def get_jobs(self) -> list[Job]:
        """Jobs whose status says they should be running."""
        rows = self._db.query(
            f'SELECT * FROM "{JOB_TABLE.name}" WHERE "status" = ? ORDER BY "job_id"',
            [JOB_STATUS_RUNNING],
        )
        return [_row_to_job(row) for row in rows]

    def job_start(self, job: Job) -> None:
        """Schedule ``job`` under its target name and mark repeating jobs running."""
        task = self._tasks.get_by_name(job.invoke_target)
        if task is None:
            raise ServiceError("没有绑定对应的方法")
        self._tasks.edit_params(task.func_name, job.job_params.split("|"))
        if self._scheduler.search(job.invoke_target) is None:
            add = (
                self._scheduler.add_singleton
                if job.misfire_policy == MISFIRE_REPEAT
                else self._scheduler.add_once
            )
            try:
                add(job.cron_expression, task.run, job.invoke_target)
            except (ValueError, RuntimeError) as exc:
                raise ServiceError(f"启动任务失败: {exc}") from exc
        self._scheduler.start(job.invoke_target)
        if job.misfire_policy == MISFIRE_REPEAT:
            job.status = JOB_STATUS_RUNNING
            self._db.update(JOB_TABLE, {"status": job.status}, {"job_id": job.job_id})

    # -- helpers ---------------------------------------------------------

    def _apply(self, job_id: int, action: Callable[[Job], None]) -> bool:
        job = self.get_by_job_id(job_id)
        if job is None:
            return False
        try:
            action(job)
        except ServiceError as exc:
            logger.warning("job %s: %s", job_id, exc)
            return False
        return True

    def _job_stop(self, job: Job) -> None:
        if self._tasks.get_by_name(job.invoke_target) is None:
            raise ServiceError("没有绑定对应的方法")
        if self._scheduler.search(job.invoke_target) is not None:
            self._scheduler.remove(job.invoke_target)
        job.status = JOB_STATUS_STOPPED
        self._db.update(JOB_TABLE, {"status": job.status}, {"job_id": job.job_id})

    def _job_run(self, job: Job) -> None:
        task = self._tasks.get_by_name(job.invoke_target)
        if task is None:
            raise ServiceError("当前task目录下没有绑定这个方法")
        self._tasks.edit_params(task.func_name, job.job_params.split("|"))
        try:
            self._scheduler.add_once("@every 1s", task.run)
        except (ValueError, RuntimeError) as exc:
            raise ServiceError("启动执行失败") from exc


class JobLogService:
    """Records and lists the results of job runs."""

    def __init__(self, db: Database) -> None:
        self._db = db
        _ensure_tables(db, JOB_LOG_TABLE)

    def add(self, data: Mapping[str, Any]) -> int:
        """Store a log row and return its id."""
        try:
            return self._db.insert(JOB_LOG_TABLE, data)
        except (sqlite3.Error, ValueError) as exc:
            raise ServiceError(f"添加失败: {exc}") from exc

    def list(self, target_name: str, page_num: int = 0, page_size: int = 0) -> LogPage[JobLog]:
        """One page of a target's log rows, newest first."""
        table = f'"{JOB_LOG_TABLE.name}"'
        try:
            total = int(
                self._db.query(
                    f'SELECT COUNT(*) AS n FROM {table} WHERE "target_name" = ?', [target_name]
                )[0]["n"]
            )
        except sqlite3.Error as exc:
            raise ServiceError(f"获取总行数失败: {exc}") from exc
        page = PageRequest(page_num, page_size).normalized()
        try:
            rows = self._db.query(
                f'SELECT * FROM {table} WHERE "target_name" = ? ORDER BY "id" DESC LIMIT ? OFFSET ?',
                [target_name, page.page_size, page.offset],
            )
        except sqlite3.Error as exc:
            raise ServiceError(f"获取数据失败: {exc}") from exc
        return LogPage(page.page_num, total, [_row_to_job_log(row) for row in rows])

    def delete(self, log_ids: Sequence[int]) -> None:
        try:
            self._db.delete(JOB_LOG_TABLE, {"id": list(log_ids)})
        except (sqlite3.Error, ValueError) as exc:
            raise ServiceError(f"删除失败: {exc}") from exc