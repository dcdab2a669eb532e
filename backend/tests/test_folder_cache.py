from app.core.drive.drive_client import FOLDER_MIME_TYPE, RemoteFile
from app.core.drive.folder_cache import FolderCache


def _folder(folder_id, name):
    return RemoteFile(id=folder_id, name=name, mime_type=FOLDER_MIME_TYPE)


def test_miss_returns_none():
    assert FolderCache().get("p1") is None


def test_root_sentinel_is_separate_from_parents():
    cache = FolderCache()
    cache.put(None, [_folder("a", "Lớp 6")])
    assert [f.id for f in cache.get(None)] == ["a"]
    assert cache.get("a") is None


def test_last_write_wins():
    cache = FolderCache()
    cache.put("p", [_folder("a", "x")])
    cache.put("p", [_folder("b", "y")])
    assert [f.id for f in cache.get("p")] == ["b"]


def test_get_returns_a_copy():
    cache = FolderCache()
    cache.put("p", [_folder("a", "x")])
    cache.get("p").append(_folder("b", "y"))
    assert len(cache.get("p")) == 1


def test_add_only_extends_cached_listings():
    cache = FolderCache()
    cache.add("p", _folder("a", "x"))
    assert cache.get("p") is None

    cache.put("p", [])
    cache.add("p", _folder("a", "x"))
    assert [f.id for f in cache.get("p")] == ["a"]


def test_clear():
    cache = FolderCache()
    cache.put("p", [])
    cache.put(None, [])
    assert len(cache) == 2
    cache.clear()
    assert len(cache) == 0
