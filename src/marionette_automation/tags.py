from __future__ import annotations

from typing import Iterable, Sequence

from .types import TaskSpec

ALWAYS_TAG = "always"


def select(
    tasks: Sequence[TaskSpec],
    include_tags: Iterable[str] = (),
    exclude_tags: Iterable[str] = (),
) -> list[TaskSpec]:
    """Subset of ``tasks`` selected by tag, in their original order.

    Untagged tasks and tasks tagged ``always`` run unless excluded. An empty
    include set matches every task. Exclusion wins over inclusion.
    """

    include = {t for t in include_tags if t}
    exclude = {t for t in exclude_tags if t}
    selected: list[TaskSpec] = []
    for task in tasks:
        tags = set(task.tags)
        if tags & exclude:
            continue
        if not include or not tags or ALWAYS_TAG in tags or tags & include:
            selected.append(task)
    return selected


def parse_tag_list(values: Iterable[str]) -> list[str]:
    """Flatten ``["a,b", "c"]`` style CLI values into ``["a", "b", "c"]``."""

    tags: list[str] = []
    for value in values:
        for part in str(value).split(","):
            part = part.strip()
            if part and part not in tags:
                tags.append(part)
    return tags
