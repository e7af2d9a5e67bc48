"""In-memory access-control policy store with named policy and grouping rules."""

from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator, Sequence

USER_SUBJECT_PREFIX = "u_"


def _to_int(value: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class PolicyStore:
    """Holds rules per policy type ("p", "g", ...); safe to share between threads.

    Each stored row is a policy type followed by its values, as in a rule table
    with columns ptype, v0 .. v5.
    """

    def __init__(self, rules: Iterable[Sequence[str]] = ()) -> None:
        self._lock = threading.RLock()
        self._rules: dict[str, list[tuple[str, ...]]] = {}
        for ptype, *values in rules:
            self._add(ptype, values)

    def __iter__(self) -> Iterator[tuple[str, ...]]:
        with self._lock:
            rows = [
                (ptype, *rule)
                for ptype, bucket in self._rules.items()
                for rule in bucket
            ]
        return iter(rows)

    def _add(self, ptype: str, values: Iterable[object]) -> bool:
        rule = tuple(str(v) for v in values)
        bucket = self._rules.setdefault(ptype, [])
        if rule in bucket:
            return False
        bucket.append(rule)
        return True

    @staticmethod
    def _matches(rule: tuple[str, ...], field_index: int, values: Sequence[str]) -> bool:
        for offset, value in enumerate(values):
            if value == "":
                continue
            position = field_index + offset
            if position >= len(rule) or rule[position] != value:
                return False
        return True

    def _filtered(self, ptype: str, field_index: int, values: Sequence[str]) -> list[list[str]]:
        if field_index < 0:
            raise ValueError("field index must not be negative")
        with self._lock:
            return [
                list(rule)
                for rule in self._rules.get(ptype, [])
                if self._matches(rule, field_index, values)
            ]

    def _remove_filtered(self, ptype: str, field_index: int, values: Sequence[str]) -> bool:
        if not values:
            raise ValueError("invalid fieldValues parameter")
        if field_index < 0:
            raise ValueError("field index must not be negative")
        with self._lock:
            bucket = self._rules.get(ptype, [])
            kept = [r for r in bucket if not self._matches(r, field_index, values)]
            if len(kept) == len(bucket):
                return False
            self._rules[ptype] = kept
            return True

    def add_named_policies(self, ptype: str, rules: Iterable[Sequence[object]]) -> bool:
        """Add rules; returns whether any rule was new."""
        with self._lock:
            added = [self._add(ptype, rule) for rule in rules]
        return any(added)

    def get_filtered_named_policy(self, ptype: str, field_index: int, *args: str) -> list[list[str]]:
        return self._filtered(ptype, field_index, args)

    def remove_filtered_named_policy(self, ptype: str, field_index: int, *args: str) -> bool:
        return self._remove_filtered(ptype, field_index, args)

    def remove_filtered_policy(self, field_index: int, *args: str) -> bool:
        return self._remove_filtered("p", field_index, args)

    def add_named_grouping_policy(self, ptype: str, *args: object) -> bool:
        with self._lock:
            return self._add(ptype, args)

    def get_filtered_named_grouping_policy(self, ptype: str, field_index: int, *args: str) -> list[list[str]]:
        return self._filtered(ptype, field_index, args)

    def remove_filtered_named_grouping_policy(self, ptype: str, field_index: int, *args: str) -> bool:
        return self._remove_filtered(ptype, field_index, args)

    def remove_filtered_grouping_policy(self, field_index: int, *args: str) -> bool:
        return self._remove_filtered("g", field_index, args)


def user_subject(user_id: str) -> str:
    """The subject under which a user's role groupings are stored."""
    return f"{USER_SUBJECT_PREFIX}{user_id}"


def role_ids_for_user(store: PolicyStore, user_id: str) -> list[int]:
    """Role ids granted to a user, without duplicates, in grant order."""
    groupings = store.get_filtered_named_grouping_policy("g", 0, user_subject(user_id))
    return list(dict.fromkeys(_to_int(rule[1]) for rule in groupings))