import pytest

from guide_reader.indexing import CollectionCycleError, CollectionManager, EntryKind, NotFoundError, ValidationError

from conftest import numbered_lines


@pytest.fixture
def collections(store):
    return CollectionManager(store)


def test_tree_structure(collections):
    rpg = collections.create("RPGs")
    snes = collections.create("SNES", parent_id=rpg.id)
    favorites = collections.create("Favorites", parent_id=snes.id)

    assert [c.id for c in collections.children()] == [rpg.id]
    assert [c.id for c in collections.children(rpg.id)] == [snes.id]
    assert [c.id for c in collections.ancestors(favorites.id)] == [snes.id, rpg.id]
    assert collections.path(favorites.id) == ["RPGs", "SNES", "Favorites"]


def test_create_requires_existing_parent_and_name(collections):
    with pytest.raises(NotFoundError):
        collections.create("Orphan", parent_id="missing")
    with pytest.raises(ValidationError):
        collections.create("  ")


def test_rename(collections):
    node = collections.create("Old")
    collections.rename(node.id, " New ")
    assert collections.get(node.id).name == "New"


def test_move_rejects_cycles(collections):
    root = collections.create("Root")
    child = collections.create("Child", parent_id=root.id)
    grandchild = collections.create("Grandchild", parent_id=child.id)

    with pytest.raises(CollectionCycleError):
        collections.move(root.id, grandchild.id)
    with pytest.raises(CollectionCycleError):
        collections.move(child.id, child.id)

    collections.move(grandchild.id, None)
    assert collections.get(grandchild.id).parent_id is None
    collections.move(root.id, grandchild.id)
    assert collections.path(child.id) == ["Grandchild", "Root", "Child"]


def test_delete_removes_subtree(collections):
    root = collections.create("Root")
    child = collections.create("Child", parent_id=root.id)
    collections.create("Grandchild", parent_id=child.id)
    keep = collections.create("Keep")

    assert collections.delete(root.id) == 3
    assert [c.id for c in collections.list()] == [keep.id]
    with pytest.raises(NotFoundError):
        collections.entries(child.id)


def test_entries_keep_order(collections, bookmarks, import_text):
    guide = import_text(numbered_lines(20))
    bookmark_id = bookmarks.create(guide.id, 3, "Start")
    node = collections.create("Stuff")

    g = collections.add_entry(node.id, EntryKind.GUIDE, guide.id)
    b = collections.add_entry(node.id, EntryKind.BOOKMARK, bookmark_id, label="start here")
    w = collections.add_entry(node.id, EntryKind.WEB_LINK, "https://example.com/maps", index=0)
    i = collections.add_entry(node.id, "image_link", "maps/world.png")

    assert [e.id for e in collections.entries(node.id)] == [w.id, g.id, b.id, i.id]
    assert [e.order_index for e in collections.entries(node.id)] == [0, 1, 2, 3]

    collections.move_entry(node.id, i.id, 0)
    assert [e.id for e in collections.entries(node.id)] == [i.id, w.id, g.id, b.id]

    collections.remove_entry(node.id, w.id)
    assert [e.id for e in collections.entries(node.id)] == [i.id, g.id, b.id]
    with pytest.raises(NotFoundError):
        collections.remove_entry(node.id, w.id)


def test_entry_targets_are_validated(collections):
    node = collections.create("Links")
    with pytest.raises(NotFoundError):
        collections.add_entry(node.id, EntryKind.GUIDE, "no-such-guide")
    with pytest.raises(NotFoundError):
        collections.add_entry(node.id, EntryKind.BOOKMARK, "no-such-bookmark")
    with pytest.raises(ValidationError):
        collections.add_entry(node.id, EntryKind.WEB_LINK, "ftp://example.com/file")
    with pytest.raises(ValidationError):
        collections.add_entry(node.id, EntryKind.WEB_LINK, "not a url")
    with pytest.raises(ValueError):
        collections.add_entry(node.id, "folder", "x")


def test_memberships_and_guide_deletion(store, collections, import_text):
    guide = import_text(numbered_lines(10))
    first = collections.create("First")
    second = collections.create("Second")
    collections.create("Third")
    collections.add_entry(first.id, EntryKind.GUIDE, guide.id)
    collections.add_entry(second.id, EntryKind.GUIDE, guide.id)

    assert {c.id for c in collections.memberships(guide.id)} == {first.id, second.id}

    store.delete_guide(guide.id)
    assert collections.memberships(guide.id) == []
    assert collections.entries(first.id) == []


def test_ensure_path_reuses_existing_levels(collections):
    rpg = collections.create("RPGs")
    node = collections.ensure_path(["RPGs", "SNES"])
    assert node.parent_id == rpg.id
    assert collections.ensure_path(["RPGs", "SNES"]).id == node.id
    assert len(collections.list()) == 2
