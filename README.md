# identsvc

The core of an identity service as a plain Python library, using only
the standard library. Data lives in SQLite; role membership and role
permissions live in an in-memory policy table.

| Module | What it holds |
| --- | --- |
| `identsvc.models` | Dataclasses and enums (`User`, `Org`, `Role`, `AuthRule`, `LoginLog`, `OperLog`, `PageRequest`, ...) and `ServiceError` |
| `identsvc.database` | `Database`, a thread-safe SQLite connection with the identity tables, transactions and insert/update/delete/query helpers |
| `identsvc.policy` | `PolicyStore`, `user_subject`, `role_ids_for_user` |
| `identsvc.auth_rules` | `AuthRuleService`, `RuleRequest`, `build_tree`, `find_children` |
| `identsvc.orgs` | `OrgService`, `OrgInfo`, `OrgTreeNode` |
| `identsvc.roles` | `RoleService`, `RoleRequest`, `RoleInfo`, `RoleNode` |
| `identsvc.users` | `UserService`, `UserCreateRequest`, `UserProfileUpdate`, `hash_password` |
| `identsvc.logs` | `LogService`, `LogPage` |
| `identsvc.tasks` | `TaskRegistry` of named callables |
| `identsvc.jobs` | `Scheduler`, `JobService`, `JobLogService`, `Job`, `JobRequest`, `JobLog` |

## Wiring the services

```python
from identsvc.auth_rules import AuthRuleService
from identsvc.database import Database
from identsvc.orgs import OrgService
from identsvc.policy import PolicyStore
from identsvc.roles import RoleService
from identsvc.users import UserService

db = Database()            # ":memory:" by default; pass a file path to keep data
store = PolicyStore()
rules = AuthRuleService(db, store, super_admin_id="admin")
orgs = OrgService(db, default_org_id="default-org")
roles = RoleService(db, store, rules, super_admin_id="admin")
users = UserService(db, store, orgs, roles, super_admin_id="admin")

password = "password"
user_id = users.register("alice", password)   # also creates an organisation managed by alice
alice = users.get_by_username("alice")
users.validate_password(alice.password, alice.salt, password)  # raises ServiceError on mismatch
```

`register` assigns the roles given as `register_role_ids` to
`UserService` (by default role `2`). `reset_password` sets the
password back to the service's `default_password` with a new salt.
Passwords are stored as `hash_password(password, salt)`, a SHA-256
hex digest of `salt:password`.

The user whose id equals `super_admin_id` sees and manages
everything; with `super_admin_id=None` nobody is super administrator.
`OrgService.delete` refuses to delete `default_org_id` and deletes
the organisation's users with it.

## Policies

```python
from identsvc.policy import PolicyStore, role_ids_for_user, user_subject

store = PolicyStore()

# Role 2 may use menu rules 10 and 11.
store.add_named_policies("p", [["2", "10", "All"], ["2", "11", "All"]])

# User "42" belongs to role 2. User subjects carry the "u_" prefix.
store.add_named_grouping_policy("g", user_subject("42"), "2")

print(store.get_filtered_named_policy("p", 0, "2"))
# [['2', '10', 'All'], ['2', '11', 'All']]

print(role_ids_for_user(store, "42"))
# [2]

# Removing role 2 from every user:
store.remove_filtered_named_grouping_policy("g", 1, "2")
```

Empty strings in a filter match any value. The store keeps no
duplicate rows and is safe to share between threads.

## Menu trees

`build_tree(root_id, rules)` builds an `AuthRuleNode` tree from a
flat list of `AuthRule` values (or returns `None` if the root is not
in the list), and `find_children(rules, pid)` returns every
descendant of a rule, depth first. `AuthRuleService` uses them to
answer:

- `get_menu_tree_by_user_id(user_id)`: rule trees without buttons;
- `get_button_list_by_user_id(user_id)`: the buttons a user may use;
- `get_full_auth_rule_tree(user_id)`: rule trees including buttons;
- `filter_rule_ids_by_user_id(rule_ids, user_id)` and
  `has_permission(user_id, rule_id)`.

`delete_by_ids` removes the rules, all their descendants and every
policy granting them.

## Logs

`LogService(db)` writes login and operation entries on a thread pool:
`invoke_login_log` and `invoke_oper_log` return a
`concurrent.futures.Future`. `record_operation(operator, path, method, ip, exclude_paths)`
logs a request unless its path is excluded. `list_login_logs` and
`list_oper_logs` return a `LogPage` (`current_page`, `total`,
`items`), newest first; a page number or size of `0` means page 1 and
10 entries. Call `close()` (or use the service as a context manager)
to wait for pending writes.

## Scheduled jobs

```python
from identsvc.jobs import JobRequest, JobService, Scheduler
from identsvc.models import TimeTask
from identsvc.tasks import TaskRegistry

tasks = TaskRegistry()
tasks.add_task(TimeTask("cleanup", run=lambda: print("cleaning up")))

with Scheduler() as scheduler:
    jobs = JobService(db, tasks, scheduler)
    job_id = jobs.add(
        "admin",
        JobRequest(
            job_name="Cleanup",
            invoke_target="cleanup",
            cron_expression="0 */5 * * * *",
            job_params="a|b",
            misfire_policy=1,
        ),
    )
    jobs.start(job_id)   # True when scheduled
```

`Scheduler` accepts six-field cron patterns (seconds first), five-field
ones, `@every <duration>` (for example `@every 1s`, `@every 1h30m`)
and `@yearly`, `@monthly`, `@weekly`, `@daily`, `@midnight`,
`@hourly`. A job with `misfire_policy=1` repeats, skipping a run while
the previous one is busy; any other policy runs once. The job's
`job_params` are split on `|` into the task's `param`. `stop` removes
the job from the scheduler and marks it stopped; `run` fires the task
once about a second later. `JobLogService` stores and lists run
results per target name.

## Errors

Operations that fail raise `identsvc.models.ServiceError` with a
message saying why: a user name that is taken, an organisation that
does not exist, an attempt to delete the default organisation, or a
role the operator may not manage. `Database` raises
`identsvc.database.DuplicateEntryError` (a `ServiceError`) when a row
breaks a unique key.

## What it does not do

This is a library only. It has no HTTP server or routes, no command
line, no login endpoint, and it neither issues nor checks access
tokens; `TokenOptions` and `IntrospectRes` are plain data holders.
The policy store is kept in memory and is not saved to the database.

## Tests

The test suite uses pytest, declared in the `test` extra:

```
pip install -e .[test]
pytest
```