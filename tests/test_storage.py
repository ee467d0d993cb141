"""Tests for local image storage."""

from types import SimpleNamespace

from backend.utils import storage as storage_module


def test_same_millisecond_writes_do_not_overwrite(storage, monkeypatch):
    monkeypatch.setattr(storage_module, "time", SimpleNamespace(time=lambda: 1700000000.5))

    first = storage.save_original("org-1", "p1", b"ring", file_name="ring.jpg")
    second = storage.save_original("org-1", "p1", b"earring", file_name="earring.jpg")
    optimized_a = storage.save_optimized("org-1", "p1", b"a")
    optimized_b = storage.save_optimized("org-1", "p1", b"b")

    assert first != second
    assert optimized_a != optimized_b
    assert storage.resolve_path(first).read_bytes() == b"ring"
    assert storage.resolve_path(second).read_bytes() == b"earring"
    assert first.startswith("org-1/p1/original_1700000000500_")
    assert optimized_b.endswith(".png")


def test_public_url(storage):
    path = storage.save_optimized("org-1", "p1", b"x")
    assert storage.public_url(path) == f"http://testserver/static/processed-images/{path}"
