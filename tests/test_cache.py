from __future__ import annotations

import importlib
import itertools
import tarfile
import threading
from pathlib import Path

import pytest

cache_mod = importlib.import_module("relayci.cache")  # package attr `cache` is the dsl helper
from relayci.cache import CacheKey, CacheStore, archive_paths, cache_key_for, extract
from relayci.expressions import hash_files
from relayci.model import CachePolicy


@pytest.fixture
def store(tmp_path: Path) -> CacheStore:
    return CacheStore(tmp_path / "cache")


@pytest.fixture
def clock(monkeypatch):
    """Deterministic, strictly increasing write timestamps."""
    ticks = itertools.count(1000)
    monkeypatch.setattr(cache_mod.time, "time", lambda: float(next(ticks)))


class TestResolve:
    def test_store_then_resolve_returns_blob(self, store):
        store.store("Linux-cargo-abc", b"payload")
        entry = store.resolve(CacheKey("Linux-cargo-abc"))
        assert entry is not None
        assert entry.key == "Linux-cargo-abc"
        assert entry.blob.read_bytes() == b"payload"

    def test_unseen_key_without_restore_keys_is_a_miss(self, store):
        store.store("Linux-cargo-abc", b"x")
        assert store.resolve(CacheKey("Linux-cargo-zzz")) is None

    def test_unmatched_restore_keys_are_a_miss(self, store):
        store.store("Linux-cargo-abc", b"x")
        assert store.resolve(CacheKey("macOS-cargo-zzz", ("macOS-cargo-", "macOS-"))) is None

    def test_exact_match_beats_newer_prefix_match(self, store, clock):
        store.store("Linux-cargo-abc", b"exact")
        store.store("Linux-cargo-def", b"newer")
        entry = store.resolve(CacheKey("Linux-cargo-abc", ("Linux-cargo-",)))
        assert entry.blob.read_bytes() == b"exact"

    def test_restore_key_returns_most_recent_match(self, store, clock):
        store.store("Linux-cargo-old", b"old")
        store.store("Linux-cargo-new", b"new")
        entry = store.resolve(CacheKey("Linux-cargo-missing", ("Linux-cargo-",)))
        assert entry.key == "Linux-cargo-new"

    def test_restore_keys_are_tried_in_declared_order(self, store, clock):
        store.store("Linux-cargo-deps-1", b"specific")
        store.store("Linux-other-2", b"generic but newer")
        entry = store.resolve(CacheKey("Linux-cargo-deps-9", ("Linux-cargo-", "Linux-")))
        assert entry.key == "Linux-cargo-deps-1"

    def test_declared_order_wins_over_longest_prefix(self, store, clock):
        store.store("Linux-cargo-deps-1", b"a")
        store.store("Linux-zzz", b"b")
        entry = store.resolve(CacheKey("nope", ("Linux-", "Linux-cargo-")))
        # "Linux-" is declared first, so its newest match wins
        assert entry.key == "Linux-zzz"

    def test_repeated_resolves_are_stable(self, store):
        store.store("k", b"v")
        first = store.resolve(CacheKey("k"))
        assert all(store.resolve(CacheKey("k")) == first for _ in range(5))


class TestStore:
    def test_second_store_is_a_noop(self, store):
        first = store.store("Linux-cargo-abc", b"first")
        second = store.store("Linux-cargo-abc", b"second")
        assert second == first
        assert store.resolve(CacheKey("Linux-cargo-abc")).blob.read_bytes() == b"first"
        assert len(list((store.root / "blobs").iterdir())) == 1

    def test_concurrent_stores_have_exactly_one_winner(self, store):
        barrier = threading.Barrier(8)
        returned = []
        lock = threading.Lock()

        def writer(n: int) -> None:
            barrier.wait()
            entry = store.store("Linux-cargo-race", f"blob-{n}".encode())
            with lock:
                returned.append(entry)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len({(e.key, e.blob, e.written_at) for e in returned}) == 1
        winner = store.resolve(CacheKey("Linux-cargo-race"))
        assert winner == returned[0]
        assert winner.blob.read_bytes().startswith(b"blob-")
        assert len(list((store.root / "blobs").iterdir())) == 1
        assert not list((store.root / "entries").glob("*.tmp"))

    def test_store_moves_a_scratch_file_into_place(self, store):
        scratch = store.scratch_path()
        scratch.write_bytes(b"on disk")
        entry = store.store("Linux-cargo-file", scratch)
        assert not scratch.exists()
        assert entry.blob.read_bytes() == b"on disk"
        assert store.get("Linux-cargo-file") == entry

    def test_losing_file_writer_discards_its_scratch_file(self, store):
        first = store.store("k", b"first")
        scratch = store.scratch_path()
        scratch.write_bytes(b"second")
        assert store.store("k", scratch) == first
        assert not scratch.exists()
        assert [p.name for p in (store.root / "blobs").iterdir()] == [first.blob.name]

    @pytest.mark.parametrize(
        "manifest",
        ['{"key": "k"}', '{"key": "k", "blob": "x.tar.gz"}', '["not", "a", "mapping"]', "{broken"],
    )
    def test_corrupt_manifests_are_skipped(self, store, manifest):
        store.store("Linux-good", b"x")
        store.manifest_path("Linux-bad").write_text(manifest)

        assert store.get("Linux-bad") is None
        assert [e.key for e in store.entries()] == ["Linux-good"]
        assert store.resolve(CacheKey("Linux-missing", ("Linux-",))).key == "Linux-good"

    def test_keys_with_path_separators_are_fine(self, store):
        store.store("refs/heads/main:cargo", b"x")
        assert store.resolve(CacheKey("refs/heads/main:cargo")) is not None

    def test_prune_keeps_newest(self, store, clock):
        for n in range(5):
            store.store(f"Linux-cargo-{n}", b"x")
        removed = store.prune(2)
        assert removed == ["Linux-cargo-2", "Linux-cargo-1", "Linux-cargo-0"]
        assert sorted(e.key for e in store.entries()) == ["Linux-cargo-3", "Linux-cargo-4"]

    def test_prune_respects_prefix(self, store, clock):
        store.store("Linux-a", b"x")
        store.store("Linux-b", b"x")
        store.store("macOS-a", b"x")
        store.prune(1, prefix="Linux-")
        assert sorted(e.key for e in store.entries()) == ["Linux-b", "macOS-a"]


def test_archive_and_extract_restore_workspace_files(workspace, store):
    target = workspace / "target" / "debug"
    target.mkdir(parents=True)
    (target / "app").write_bytes(b"\x7fELF")
    (workspace / "target" / "stamp").write_text("ok")

    entry = store.save_paths("k", ["target", "does-not-exist"], workspace)

    restored_into = workspace.parent / "other"
    restored_into.mkdir()
    assert extract(entry, restored_into) == 2
    assert (restored_into / "target" / "debug" / "app").read_bytes() == b"\x7fELF"
    assert (restored_into / "target" / "stamp").read_text() == "ok"


def test_save_paths_streams_through_a_scratch_file(workspace, store):
    (workspace / "target").mkdir()
    (workspace / "target" / "out").write_text("artifact")

    entry = store.save_paths("Linux-cargo-abc", ["target"], workspace)

    assert not list((store.root / "blobs").glob("*.tmp"))
    with tarfile.open(str(entry.blob), mode="r:gz") as tar:
        assert tar.getnames() == ["root/target/out"]
    assert store.save_paths("Linux-cargo-abc", ["target"], workspace) == entry


def test_archive_paths_writes_to_the_given_file(workspace, tmp_path):
    (workspace / "Cargo.toml").write_text("[package]")
    dest = archive_paths(["Cargo.toml"], tmp_path / "out.tar.gz", workspace)
    assert dest == tmp_path / "out.tar.gz"
    with tarfile.open(str(dest), mode="r:gz") as tar:
        assert tar.getnames() == ["root/Cargo.toml"]


def test_cache_key_for_renders_templates(workspace):
    policy = CachePolicy(
        key="${{ runner.os }}-cargo-${{ hashFiles('Cargo.lock') }}",
        restore_keys=("${{ runner.os }}-cargo-", "${{ matrix.missing }}"),
    )
    key = cache_key_for(policy, {"runner": {"os": "Linux"}}, root=workspace)
    assert key.primary == f"Linux-cargo-{hash_files(workspace, 'Cargo.lock')}"
    # restore keys rendering to "" are dropped
    assert key.restore_keys == ("Linux-cargo-",)
