"""Tests for the artifact store."""

import hashlib
import io
import tarfile
import threading
from pathlib import Path

import pytest

from pipewright.artifacts import ArtifactStore, DirectoryArtifactStore, pack_directory, unpack_directory
from pipewright.errors import ArtifactNotFoundError, CancellationError, ConfigError


def test_put_get():
    store = ArtifactStore()
    handle = store.put("bin-linux", b"\x00\x01payload", producer="build[os=linux]")
    assert store.get("bin-linux") == b"\x00\x01payload"
    assert handle.size == 9
    assert handle.digest == hashlib.sha256(b"\x00\x01payload").hexdigest()
    assert handle.producer == "build[os=linux]"
    assert store.exists("bin-linux")


def test_get_missing_raises_not_found():
    store = ArtifactStore()
    with pytest.raises(ArtifactNotFoundError, match="artifact not found: nope"):
        store.get("nope")
    # also a KeyError for callers treating the store like a mapping
    with pytest.raises(KeyError):
        store.handle("nope")


def test_second_put_rejected():
    store = ArtifactStore()
    store.put("bin", b"one", producer="a")
    with pytest.raises(ConfigError, match="already uploaded by a"):
        store.put("bin", b"two", producer="b")
    assert store.get("bin") == b"one"


def test_wait_returns_once_put():
    store = ArtifactStore()
    timer = threading.Timer(0.1, lambda: store.put("late", b"data"))
    timer.start()
    handle = store.wait("late", timeout=2)
    assert handle.name == "late"
    assert store.get("late") == b"data"


def test_wait_times_out():
    with pytest.raises(TimeoutError):
        ArtifactStore().wait("never", timeout=0.2)


def test_wait_honours_cancellation():
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(CancellationError):
        ArtifactStore().wait("never", timeout=5, cancel_event=cancel)


def test_close_drops_everything():
    store = ArtifactStore()
    store.put("bin", b"x")
    store.close()
    assert store.handles() == []


def test_directory_store(tmp_path):
    store = DirectoryArtifactStore(tmp_path / "artifacts", run_id="run1")
    handle = store.put("dist/app.tar.gz", b"archive")
    assert handle.path is not None
    assert Path(handle.path).parent == tmp_path / "artifacts" / "run1"
    assert Path(handle.path).read_bytes() == b"archive"
    assert store.get("dist/app.tar.gz") == b"archive"

    store.close()
    assert not (tmp_path / "artifacts" / "run1").exists()


def test_directory_store_keeps_similar_names_apart(tmp_path):
    store = DirectoryArtifactStore(tmp_path, run_id="run1")
    store.put("bin/linux", b"first")
    store.put("bin_linux", b"second")
    assert store.get("bin/linux") == b"first"
    assert store.get("bin_linux") == b"second"


def test_pack_and_unpack_directory(tmp_path):
    src = tmp_path / "src"
    (src / "nested").mkdir(parents=True)
    (src / "a.txt").write_text("alpha")
    (src / "nested" / "b.bin").write_bytes(b"\x00\xff")

    data = pack_directory(src)
    dest = tmp_path / "dest"
    written = unpack_directory(data, dest)
    assert sorted(p.relative_to(dest.resolve()).as_posix() for p in written) == ["a.txt", "nested/b.bin"]
    assert (dest / "nested" / "b.bin").read_bytes() == b"\x00\xff"


def test_unpack_rejects_path_traversal(tmp_path):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        info = tarfile.TarInfo("../evil.txt")
        info.size = 4
        tar.addfile(info, io.BytesIO(b"evil"))

    with pytest.raises(ValueError, match="outside"):
        unpack_directory(buf.getvalue(), tmp_path / "dest")
    assert not (tmp_path / "evil.txt").exists()
