import json
import zipfile

import pytest

from guide_reader.indexing import (
    BookmarkManager,
    CollectionManager,
    EntryKind,
    GuideParser,
    ImportWorker,
    IndexStore,
    InMemoryIndexRepository,
    LocalGuideStorage,
    StoragePaths,
    ValidationError,
    export_bundle,
    import_bundle,
    read_manifest,
)

from conftest import numbered_lines

GUIDE = (
    b"==============\n"
    b"FINAL QUEST FAQ\n"
    b"==============\n"
    b"\n"
    b"1. CONTROLS\n"
    b"\n"
    + numbered_lines(40)
    + b"\n2. WALKTHROUGH\n\n"
    + numbered_lines(40, prefix="step")
    + b"\n2.1 THE CAVE\n\n"
    + b"   /\\   \n  /  \\  \n /____\\ \n"
)


def _fresh_worker(root):
    store = IndexStore(InMemoryIndexRepository(), LocalGuideStorage(StoragePaths(root)), retry_delay=0)
    return ImportWorker(store, GuideParser(), bookmarks=BookmarkManager(store))


def _tree_shape(nodes):
    return [(n.line_number, n.title, n.level, _tree_shape(n.children)) for n in nodes]


def test_round_trip_preserves_index(tmp_path, store, bookmarks, import_text):
    guide = import_text(GUIDE, guide_id="final-quest")
    bookmarks.create(guide.id, 10, "Controls")
    bookmarks.create(guide.id, guide.line_count - 1, "Art", category="fun")
    stale_id = bookmarks.create(guide.id, guide.line_count - 2, "Will go stale")
    stale = bookmarks.get(stale_id)
    stale.line_number = guide.line_count + 50
    stale.stale = True
    store.repo.save_bookmark(stale)
    collections = CollectionManager(store)
    faqs = collections.ensure_path(["Games", "FAQs"])
    collections.add_entry(faqs.id, EntryKind.GUIDE, guide.id)

    bundle = export_bundle(store, guide.id, tmp_path / "out" / "final-quest.zip")

    with zipfile.ZipFile(bundle) as archive:
        assert archive.read("content.txt") == GUIDE
    manifest = read_manifest(bundle)
    assert manifest["line_count"] == guide.line_count
    assert manifest["collections"] == [["Games", "FAQs"]]

    target = _fresh_worker(tmp_path / "other")
    imported = import_bundle(target, bundle)
    other = target.store

    assert imported.id == "final-quest"
    assert imported.line_count == guide.line_count
    assert _tree_shape(other.get_section_tree(imported.id)) == _tree_shape(store.get_section_tree(guide.id))
    assert [(b.line_number, b.label, b.category, b.stale) for b in other.repo.list_bookmarks(imported.id)] == [
        (b.line_number, b.label, b.category, b.stale) for b in store.repo.list_bookmarks(guide.id)
    ]
    other_collections = CollectionManager(other)
    assert [other_collections.path(c.id) for c in other_collections.memberships(imported.id)] == [["Games", "FAQs"]]
    assert other.get_line_range(imported.id, 1, imported.line_count - 3, imported.line_count) == [
        "   /\\   ",
        "  /  \\  ",
        " /____\\ ",
    ]
    assert list(other.storage.paths.uploads_dir().iterdir()) == []


def test_import_under_new_id(tmp_path, store, import_text):
    guide = import_text(numbered_lines(30))
    bundle = export_bundle(store, guide.id, tmp_path / "guide.zip")
    target = _fresh_worker(tmp_path / "other")
    imported = import_bundle(target, bundle, guide_id="copy")
    assert imported.id == "copy"
    assert imported.title == guide.title


def test_reimporting_bundle_does_not_duplicate_bookmarks(tmp_path, store, worker, bookmarks, import_text):
    guide = import_text(numbered_lines(30))
    bookmarks.create(guide.id, 5, "Five")
    bundle = export_bundle(store, guide.id, tmp_path / "guide.zip")

    import_bundle(worker, bundle)
    assert store.current_version(guide.id) == 2
    assert [b.label for b in bookmarks.list(guide.id)] == ["Five"]


def test_rejects_foreign_archives(tmp_path, worker):
    not_zip = tmp_path / "plain.txt"
    not_zip.write_text("hello")
    with pytest.raises(ValidationError):
        read_manifest(not_zip)

    wrong_format = tmp_path / "other.zip"
    with zipfile.ZipFile(wrong_format, "w") as archive:
        archive.writestr("manifest.json", json.dumps({"format": "something-else"}))
    with pytest.raises(ValidationError):
        import_bundle(worker, wrong_format)


def test_rejects_tampered_content(tmp_path, store, worker, import_text):
    guide = import_text(numbered_lines(30))
    bundle = export_bundle(store, guide.id, tmp_path / "guide.zip")
    manifest = read_manifest(bundle)

    tampered = tmp_path / "tampered.zip"
    with zipfile.ZipFile(tampered, "w") as archive:
        archive.writestr("manifest.json", json.dumps(manifest))
        archive.writestr("content.txt", b"something else\n")
    with pytest.raises(ValidationError):
        import_bundle(worker, tampered)
    assert store.current_version(guide.id) == 1


def test_round_trip_keeps_bookmark_collections(tmp_path, store, bookmarks, import_text):
    guide = import_text(numbered_lines(50), guide_id="boss-guide")
    boss = bookmarks.create(guide.id, 30, "Boss", category="bosses")
    bookmarks.create(guide.id, 5, "Start")
    collections = CollectionManager(store)
    favorites = collections.create("Favorites")
    collections.add_entry(favorites.id, EntryKind.BOOKMARK, boss, label="Hardest fight")

    bundle = export_bundle(store, guide.id, tmp_path / "boss.zip")
    assert [m["path"] for m in read_manifest(bundle)["bookmark_collections"]] == [["Favorites"]]

    target = _fresh_worker(tmp_path / "other")
    imported = import_bundle(target, bundle)
    other = CollectionManager(target.store)
    restored = {b.label: b.id for b in target.store.repo.list_bookmarks(imported.id)}

    assert [other.path(c.id) for c in other.memberships(restored["Boss"], EntryKind.BOOKMARK)] == [["Favorites"]]
    assert other.memberships(restored["Start"], EntryKind.BOOKMARK) == []
    [entry] = other.entries(other.ensure_path(["Favorites"]).id)
    assert (entry.kind, entry.target, entry.label) == (EntryKind.BOOKMARK, restored["Boss"], "Hardest fight")

    import_bundle(target, bundle)
    assert len(other.entries(other.ensure_path(["Favorites"]).id)) == 1
