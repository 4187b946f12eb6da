from agentloop.analyzer import (
    build_dependency_map,
    conflicts,
    extract_file_references,
    extract_referenced_ids,
    shared_files,
)


def test_extract_referenced_ids_dedupes() -> None:
    text = "Needs US-001 and GH-12. See US-001 again; ignore XX-5."
    assert extract_referenced_ids(text) == {"US-001", "GH-12"}


def test_extract_referenced_ids_custom_prefixes() -> None:
    assert extract_referenced_ids("after TASK-7 and US-1", ["TASK"]) == {"TASK-7"}


def test_dependency_map_ignores_self_and_unknown(make_item) -> None:
    items = [
        make_item("US-001", "Base work, see US-001"),
        make_item("US-002", "Builds on US-001 and US-999"),
        make_item("US-003", notes="Wait for US-002", acceptance_criteria=["US-001 still works"]),
    ]

    deps = build_dependency_map(items)

    assert deps == {
        "US-001": set(),
        "US-002": {"US-001"},
        "US-003": {"US-001", "US-002"},
    }


def test_dependency_map_does_not_scan_title(make_item) -> None:
    items = [make_item("US-001"), make_item("US-002", title="Follow-up to US-001")]
    assert build_dependency_map(items)["US-002"] == set()


def test_extract_file_references() -> None:
    text = "Edit src/app.ts and `lib/util.py`, also 'styles/main.scss'. Not README.md."
    assert extract_file_references(text) == {"src/app.ts", "lib/util.py", "styles/main.scss"}


def test_extract_file_references_prefers_longest_extension() -> None:
    assert extract_file_references("config.json and view.tsx") == {"config.json", "view.tsx"}


def test_single_shared_file_is_not_a_conflict(make_item) -> None:
    a = make_item("US-001", "Touches src/shared.ts and src/a.ts")
    b = make_item("US-002", "Touches src/shared.ts and src/b.ts")

    assert shared_files(a, b) == {"src/shared.ts"}
    assert not conflicts(a, b)


def test_two_shared_files_conflict(make_item) -> None:
    a = make_item("US-001", "Update src/db.py and src/models.py")
    b = make_item("US-002", "Refactor src/models.py, then src/db.py")

    assert conflicts(a, b)
    assert conflicts(b, a)
