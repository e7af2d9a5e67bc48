[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "identsvc"
version = "0.1.0"
description = "Identity service core: users, organisations, roles, menu permission rules, audit logs and scheduled jobs on SQLite"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "identity",
    "rbac",
    "permissions",
    "users",
    "roles",
    "organisations",
    "audit-log",
    "scheduler",
    "sqlite",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration :: Authentication/Directory",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["identsvc"]

[tool.hatch.build.targets.sdist]
include = ["identsvc", "tests"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
target-version = "py310"
line-length = 100

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
