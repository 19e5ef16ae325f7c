import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from content_store import ContentStore  # noqa: E402


@pytest.fixture
def store(tmp_path):
    return ContentStore(str(tmp_path / "blobs"), 16)


def test_put_get_delete(store):
    key = store.put(b"abc", "image/jpeg")
    assert ContentStore.valid_key(key)
    assert store.get(key) == (b"abc", "image/jpeg")
    assert store.delete(key) is True
    assert store.get(key) is None
    assert store.delete(key) is False


def test_size_ceiling(store):
    store.put(b"x" * 16)
    with pytest.raises(ValueError):
        store.put(b"x" * 17)


def test_missing_metadata_falls_back_to_octet_stream(store):
    key = store.put(b"abc", "image/png")
    (store.root / f"{key}.meta.json").unlink()
    assert store.get(key) == (b"abc", "application/octet-stream")


@pytest.mark.parametrize("key", ["", None, "../etc/passwd", "A" * 32, "a" * 31])
def test_invalid_keys_never_touch_disk(store, key):
    assert store.get(key) is None
    assert store.delete(key) is False
