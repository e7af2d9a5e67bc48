import threading
import time
from datetime import datetime

import pytest

from identsvc.database import Database
from identsvc.jobs import (
    Job,
    JobLogService,
    JobRequest,
    JobService,
    Scheduler,
)
from identsvc.models import ServiceError, TimeTask
from identsvc.tasks import TaskRegistry


@pytest.fixture
def db():
    database = Database()
    yield database
    database.close()


@pytest.fixture
def scheduler():
    sched = Scheduler()
    yield sched
    sched.close()


@pytest.fixture
def registry():
    return TaskRegistry()


@pytest.fixture
def service(db, registry, scheduler):
    return JobService(db, registry, scheduler)


def _request(name="job", target="t1", cron="0 0 0 * * *", **kwargs):
    return JobRequest(job_name=name, invoke_target=target, cron_expression=cron, **kwargs)


# -- scheduler ---------------------------------------------------------------


def test_singleton_repeats(scheduler):
    calls = []
    scheduler.add_singleton("@every 30ms", lambda: calls.append(1), "rep")
    deadline = time.time() + 3
    while len(calls) < 3 and time.time() < deadline:
        time.sleep(0.01)
    assert len(calls) >= 3
    assert scheduler.search("rep") is not None


def test_add_once_runs_once_and_is_forgotten(scheduler):
    fired = threading.Event()
    calls = []

    def job():
        calls.append(1)
        fired.set()

    entry = scheduler.add_once("@every 20ms", job, "single")
    assert entry.once is True
    assert fired.wait(3)
    time.sleep(0.15)
    assert calls == [1]
    assert scheduler.search("single") is None


def test_singleton_never_overlaps(scheduler):
    lock = threading.Lock()
    state = {"active": 0, "max": 0, "calls": 0}

    def slow():
        with lock:
            state["active"] += 1
            state["calls"] += 1
            state["max"] = max(state["max"], state["active"])
        time.sleep(0.15)
        with lock:
            state["active"] -= 1

    entry = scheduler.add_singleton("@every 20ms", slow, "slow")
    assert entry.singleton is True
    time.sleep(0.5)
    removed = scheduler.remove("slow")
    assert removed is True
    assert scheduler.search("slow") is None
    assert state["calls"] >= 1
    assert state["max"] == 1


def test_duplicate_name_rejected(scheduler):
    scheduler.add_singleton("@hourly", lambda: None, "dup")
    with pytest.raises(ValueError):
        scheduler.add_once("@hourly", lambda: None, "dup")


@pytest.mark.parametrize("pattern", ["@every", "@every -1s", "@sometimes", "1 2 3", "61 * * * * *", "0 0 0 30 2 *"])
def test_invalid_patterns(scheduler, pattern):
    with pytest.raises(ValueError):
        scheduler.add_singleton(pattern, lambda: None, "bad")
    assert scheduler.search("bad") is None


def test_cron_next_time_matches_fields(scheduler):
    entry = scheduler.add_singleton("0 0 0 1 jan *", lambda: None, "newyear")
    moment = entry.next_time
    assert (moment.month, moment.day, moment.hour, moment.minute, moment.second) == (1, 1, 0, 0, 0)
    assert moment > datetime.now()


def test_five_field_cron_and_weekday(scheduler):
    entry = scheduler.add_singleton("30 4 * * sun", lambda: None, "weekly")
    moment = entry.next_time
    assert moment.isoweekday() == 7
    assert (moment.hour, moment.minute, moment.second) == (4, 30, 0)


def test_remove_and_start_unknown(scheduler):
    scheduler.add_singleton("@daily", lambda: None, "gone")
    assert scheduler.remove("gone") is True
    assert scheduler.search("gone") is None
    assert scheduler.start("gone") is False
    assert scheduler.remove("gone") is False


def test_auto_names_are_distinct(scheduler):
    first = scheduler.add_once("@hourly", lambda: None)
    second = scheduler.add_once("@hourly", lambda: None)
    assert first.name != second.name
    assert scheduler.search(first.name) is first


def test_closed_scheduler_refuses_jobs():
    sched = Scheduler()
    sched.close()
    with pytest.raises(RuntimeError):
        sched.add_once("@hourly", lambda: None, "late")


# -- job service -------------------------------------------------------------


def test_add_and_get_round_trip(service):
    job_id = service.add("op-1", _request(name="cleanup", job_params="a|b", job_group="sys", remark="r"))
    job = service.get_by_job_id(job_id)
    assert isinstance(job, Job)
    assert job.job_id == job_id
    assert job.job_name == "cleanup"
    assert job.job_params == "a|b"
    assert job.job_group == "sys"
    assert job.created_by == "op-1"
    assert job.remark == "r"
    assert job.created_at is not None


def test_get_missing_job_is_none(service):
    assert service.get_by_job_id(404) is None


def test_list_filters_and_pages(service):
    ids = [service.add("op", _request(name=f"backup-{i}", job_group="g")) for i in range(3)]
    service.add("op", _request(name="report", job_group="h", status=1))

    page = service.list(job_name="backup")
    assert page.total == 3
    assert [job.job_id for job in page.items] == ids
    assert page.current_page == 1

    second = service.list(job_name="backup", page_num=2, page_size=2)
    assert second.current_page == 2
    assert [job.job_id for job in second.items] == ids[2:]

    assert [job.job_name for job in service.list(job_group="h").items] == ["report"]
    assert [job.job_name for job in service.list(status="1").items] == ["report"]
    assert service.list(status=0).total == 3


def test_edit_updates_fields(service):
    job_id = service.add("op", _request(name="old"))
    service.edit("op-2", job_id, _request(name="new", cron="@hourly", misfire_policy=1))
    job = service.get_by_job_id(job_id)
    assert job.job_name == "new"
    assert job.cron_expression == "@hourly"
    assert job.misfire_policy == 1
    assert job.updated_by == "op-2"
    assert job.created_by == "op"


def test_delete_jobs(service):
    keep = service.add("op", _request(name="keep"))
    drop = [service.add("op", _request(name=f"drop{i}")) for i in range(2)]
    service.delete(drop)
    assert [job.job_id for job in service.list().items] == [keep]


def test_start_repeating_job(service, registry, scheduler):
    registry.add_task(TimeTask(func_name="t1", run=lambda: None))
    job_id = service.add("op", _request(target="t1", misfire_policy=1, status=1, job_params="x|y"))
    assert service.start(job_id) is True
    entry = scheduler.search("t1")
    assert entry is not None
    assert entry.singleton is True
    assert service.get_by_job_id(job_id).status == 0
    assert registry.get_by_name("t1").param == ["x", "y"]
    assert [job.job_id for job in service.get_jobs()] == [job_id]


def test_start_once_job_keeps_status(service, registry, scheduler):
    registry.add_task(TimeTask(func_name="t1", run=lambda: None))
    job_id = service.add("op", _request(target="t1", misfire_policy=0, status=1))
    assert service.start(job_id) is True
    assert scheduler.search("t1").once is True
    assert service.get_by_job_id(job_id).status == 1


def test_start_without_bound_task(service, scheduler):
    job_id = service.add("op", _request(target="missing"))
    assert service.start(job_id) is False
    assert scheduler.search("missing") is None
    assert service.start(999) is False


def test_job_start_raises_for_unbound_task(service):
    with pytest.raises(ServiceError):
        service.job_start(Job(job_id=1, invoke_target="nothing", cron_expression="@hourly"))


def test_job_start_bad_pattern(service, registry):
    registry.add_task(TimeTask(func_name="t1", run=lambda: None))
    job_id = service.add("op", _request(target="t1", cron="not a cron", misfire_policy=1))
    with pytest.raises(ServiceError):
        service.job_start(service.get_by_job_id(job_id))


def test_stop_job(service, registry, scheduler):
    registry.add_task(TimeTask(func_name="t1", run=lambda: None))
    job_id = service.add("op", _request(target="t1", misfire_policy=1))
    service.start(job_id)
    assert service.stop(job_id) is True
    assert scheduler.search("t1") is None
    assert service.get_by_job_id(job_id).status == 1
    assert service.get_jobs() == []


def test_run_executes_task_once(service, registry):
    fired = threading.Event()
    registry.add_task(TimeTask(func_name="t1", run=fired.set))
    job_id = service.add("op", _request(target="t1", job_params="p"))
    assert service.run(job_id) is True
    assert fired.wait(4)
    assert registry.get_by_name("t1").param == ["p"]


# -- job log service ---------------------------------------------------------


def test_job_log_add_list_delete(db):
    logs = JobLogService(db)
    ids = [logs.add({"target_name": "t1", "result": f"r{i}"}) for i in range(3)]
    logs.add({"target_name": "other", "result": "x"})

    page = logs.list("t1")
    assert page.total == 3
    assert [entry.id for entry in page.items] == list(reversed(ids))
    assert page.items[0].result == "r2"
    assert page.items[0].created_at is not None

    second = logs.list("t1", page_num=2, page_size=2)
    assert [entry.id for entry in second.items] == [ids[0]]

    logs.delete(ids[:2])
    assert [entry.id for entry in logs.list("t1").items] == [ids[2]]


def test_job_log_unknown_column(db):
    logs = JobLogService(db)
    with pytest.raises(ServiceError):
        logs.add({"no_such_column": "x"})