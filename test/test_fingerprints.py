import os

import pytest

from prepbuild.pipeline.core.errors import ManifestNotFound
from prepbuild.pipeline.core.fingerprints import hash_manifests, iter_files, path_size


def _write(path, data: bytes):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


def test_identical_content_gives_identical_fingerprint_regardless_of_path_and_mtime(tmp_path):
    a1 = _write(tmp_path / "one" / "package.json", b'{"name": "x"}')
    a2 = _write(tmp_path / "one" / "package-lock.json", b'{"lock": 1}')
    b1 = _write(tmp_path / "elsewhere" / "deep" / "manifest.json", b'{"name": "x"}')
    b2 = _write(tmp_path / "elsewhere" / "lock", b'{"lock": 1}')
    os.utime(b1, (1_000_000, 1_000_000))
    os.chmod(b2, 0o600)

    fp = hash_manifests([a1, a2])
    assert fp == hash_manifests([b1, b2])
    assert len(fp) == 64
    assert all(c in "0123456789abcdef" for c in fp)


def test_content_change_changes_fingerprint(tmp_path):
    a = _write(tmp_path / "package.json", b'{"dependencies": {"a": "1"}}')
    before = hash_manifests([a])
    a.write_bytes(b'{"dependencies": {"a": "2"}}')
    assert hash_manifests([a]) != before


def test_declared_order_matters(tmp_path):
    a = _write(tmp_path / "a", b"alpha")
    b = _write(tmp_path / "b", b"beta")
    assert hash_manifests([a, b]) != hash_manifests([b, a])


def test_file_boundaries_are_not_ambiguous(tmp_path):
    a = _write(tmp_path / "a", b"ab")
    b = _write(tmp_path / "b", b"c")
    c = _write(tmp_path / "c", b"a")
    d = _write(tmp_path / "d", b"bc")
    assert hash_manifests([a, b]) != hash_manifests([c, d])


def test_missing_manifest_raises(tmp_path):
    present = _write(tmp_path / "package.json", b"{}")
    with pytest.raises(ManifestNotFound) as exc_info:
        hash_manifests([present, tmp_path / "package-lock.json"])
    assert exc_info.value.path.name == "package-lock.json"
    assert exc_info.value.exit_code == 2


def test_iter_files_and_path_size(tmp_path):
    _write(tmp_path / "b" / "x.js", b"12345")
    _write(tmp_path / "a.js", b"1")
    (tmp_path / "empty").mkdir()

    assert [p.relative_to(tmp_path).as_posix() for p in iter_files(tmp_path)] == ["a.js", "b/x.js"]
    assert path_size(tmp_path) == 6
    assert path_size(tmp_path / "a.js") == 1
    assert path_size(tmp_path / "missing") == 0
