"""Identity service core on SQLite: users, organisations, roles, permission rules, logs and jobs."""

__version__ = "0.1.0"