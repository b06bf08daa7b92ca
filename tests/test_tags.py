from marionette_automation.tags import parse_tag_list, select
from marionette_automation.types import CapabilityKind, TaskSpec


def make(name: str, *tags: str) -> TaskSpec:
    return TaskSpec(name=name, kind=CapabilityKind.FILE, params={"path": f"/tmp/{name}"}, tags=tags)


TASKS = [
    make("untagged"),
    make("web", "web"),
    make("db", "db"),
    make("both", "web", "db"),
    make("facts", "always"),
]


def names(tasks) -> list[str]:
    return [task.name for task in tasks]


def test_empty_include_selects_everything() -> None:
    assert names(select(TASKS)) == ["untagged", "web", "db", "both", "facts"]


def test_include_matches_intersection_and_keeps_untagged() -> None:
    assert names(select(TASKS, ["web"])) == ["untagged", "web", "both", "facts"]


def test_exclude_wins_over_include() -> None:
    assert names(select(TASKS, ["web"], ["db"])) == ["untagged", "web", "facts"]


def test_always_tag_can_be_excluded() -> None:
    assert names(select(TASKS, ["db"], ["always"])) == ["untagged", "db", "both"]


def test_parse_tag_list_flattens_and_dedupes() -> None:
    assert parse_tag_list(["web,db", " db ", "", "cache"]) == ["web", "db", "cache"]
