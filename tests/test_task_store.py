from pathlib import Path

import pytest

from devman.storage.tasks import TaskStore, validate_task


@pytest.mark.parametrize("name", ["", "..", "a/b", "../etc", ".hidden", "x" * 200])
def test_invalid_task_names_are_rejected(name: str) -> None:
    with pytest.raises(ValueError):
        validate_task(name)


def test_paths_cannot_escape_task_storage(store: TaskStore) -> None:
    with pytest.raises(ValueError):
        store.resolve("alpha", "../memory.md")
    with pytest.raises(ValueError):
        store.resolve("alpha", "/etc/passwd")
    with pytest.raises(ValueError):
        store.resolve("alpha", ".")


def test_write_read_list_delete(store: TaskStore) -> None:
    store.write("alpha", "docs/a.md", "A")
    store.write("alpha", "b.md", "B")

    assert store.read("alpha", "docs/a.md") == "A"
    assert store.list("alpha") == ["b.md", "docs/a.md"]
    assert store.list("alpha", "docs/") == ["docs/a.md"]
    assert store.delete("alpha", "b.md")
    assert not store.delete("alpha", "b.md")
    assert store.list_tasks() == ["alpha"]


def test_memory_append_adds_dated_sections(store: TaskStore) -> None:
    store.write_memory("alpha", "first note")
    store.write_memory("alpha", "second note")

    memory = store.read_memory("alpha")
    assert memory.count("\n## ") == 2
    assert memory.index("first note") < memory.index("second note")

    store.write_memory("alpha", "replaced", append=False)
    assert store.read_memory("alpha") == "replaced"


def test_offload_path_is_inside_task_storage(store: TaskStore, tmp_path: Path) -> None:
    relative = store.offload("alpha", "telegram:alpha", "toolu_1", "payload")

    assert relative == ".offload/telegram%3Aalpha/toolu_1.txt"
    assert (tmp_path / "tasks" / "alpha" / "storage" / relative).read_text() == "payload"
