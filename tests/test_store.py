"""Tests for the local artifact store."""

import threading

import pytest

from libartifact import digest as digests
from libartifact.errors import (
    AlreadyExistsError,
    AmbiguousSelectorError,
    ConcurrentModificationError,
    InvalidSelectorError,
    NotFoundError,
    SelectorRequiredError,
    ValidationError,
)
from libartifact.models import BlobSource
from libartifact.options import ArtifactExtractOptions, DigestSelector, TitleSelector
from libartifact.store import LocalArtifactStore

NAME = "localhost/demo:latest"


def _sources(*items):
    return [BlobSource(data=data, title=title) for title, data in items]


def test_create_and_get(store):
    artifact = store.create(NAME, _sources(("a.txt", b"a")))
    assert store.exists(NAME)
    assert store.get(NAME) == artifact
    assert store.list() == [artifact]


def test_create_requires_blobs(store):
    with pytest.raises(ValidationError):
        store.create(NAME, [])


def test_create_twice_fails(store):
    store.create(NAME, _sources(("a.txt", b"a")))
    with pytest.raises(AlreadyExistsError):
        store.create(NAME, _sources(("b.txt", b"b")))


def test_get_by_short_name_digest_and_prefix(store):
    artifact = store.create(NAME, _sources(("a.txt", b"a")))
    assert store.get("demo") == artifact
    assert store.get(artifact.digest) == artifact
    assert store.get(digests.hex_part(artifact.digest)[:12]) == artifact


def test_get_unknown(store):
    with pytest.raises(NotFoundError):
        store.get("missing")


def test_ambiguous_digest_prefix(store):
    # same content under two names gives the same digest
    store.create("localhost/one:latest", _sources(("a.txt", b"a")))
    artifact = store.create("localhost/two:latest", _sources(("a.txt", b"a")))
    with pytest.raises(AmbiguousSelectorError):
        store.get(digests.hex_part(artifact.digest)[:8])


def test_append_extends_and_changes_digest(store):
    first = store.create(NAME, _sources(("a.txt", b"a")), annotations={"k": "1"})
    second = store.append(NAME, _sources(("b.txt", b"b")), {"k": "2", "x": "y"})
    assert [b.title for b in second.blobs] == ["a.txt", "b.txt"]
    assert second.annotations == {"k": "2", "x": "y"}
    assert second.digest != first.digest
    assert store.get(NAME).digest == second.digest


def test_append_nothing_is_a_no_op(store):
    first = store.create(NAME, _sources(("a.txt", b"a")))
    assert store.append(NAME, []) == first


def test_two_callers_append_from_the_same_digest(store):
    store.create(NAME, _sources(("a.txt", b"a")))
    seen_by_first = store.get(NAME).digest
    seen_by_second = store.get(NAME).digest

    store.append(NAME, _sources(("b.txt", b"b")), expected_digest=seen_by_first)
    with pytest.raises(ConcurrentModificationError):
        store.append(NAME, _sources(("c.txt", b"c")), expected_digest=seen_by_second)

    reread = store.get(NAME)
    final = store.append(NAME, _sources(("c.txt", b"c")), expected_digest=reread.digest)
    assert [b.title for b in final.blobs] == ["a.txt", "b.txt", "c.txt"]


def test_append_detects_change_between_read_and_commit(store, monkeypatch):
    store.create(NAME, _sources(("a.txt", b"a")))
    original = LocalArtifactStore._hash_sources

    def interleaved(sources):
        monkeypatch.undo()
        store.append(NAME, _sources(("other.txt", b"o")))
        return original(sources)

    monkeypatch.setattr(store, "_hash_sources", interleaved)
    with pytest.raises(ConcurrentModificationError):
        store.append(NAME, _sources(("b.txt", b"b")))
    assert [b.title for b in store.get(NAME).blobs] == ["a.txt", "other.txt"]

    final = store.append(NAME, _sources(("b.txt", b"b")), expected_digest=store.get(NAME).digest)
    assert [b.title for b in final.blobs] == ["a.txt", "other.txt", "b.txt"]


def test_returned_artifacts_cannot_be_changed(store):
    artifact = store.create(NAME, _sources(("a.txt", b"a")), annotations={"k": "v"})
    with pytest.raises(TypeError):
        store.get(NAME).annotations["k"] = "changed"
    with pytest.raises(TypeError):
        store.list()[0].blobs[0].annotations["x"] = "y"
    stored = store.get(NAME)
    assert stored.annotations == {"k": "v"}
    assert stored.digest == artifact.digest == digests.compute(stored.manifest_bytes())


def test_concurrent_appends_never_lose_blobs(store):
    store.create(NAME, _sources(("base", b"base")))
    outcomes = []
    barrier = threading.Barrier(8)

    def worker(i):
        barrier.wait()
        while True:
            current = store.get(NAME)
            try:
                store.append(NAME, _sources((f"f{i}", f"payload-{i}".encode())), expected_digest=current.digest)
            except ConcurrentModificationError:
                continue
            outcomes.append(i)
            return

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    final = store.get(NAME)
    assert sorted(outcomes) == list(range(8))
    assert len(final.blobs) == 9
    assert {b.title for b in final.blobs} == {"base"} | {f"f{i}" for i in range(8)}


def test_extract_selectors(store):
    artifact = store.create(NAME, _sources(("a.txt", b"alpha"), ("b.txt", b"beta")))
    assert store.extract(NAME, TitleSelector("b.txt")) == b"beta"
    assert store.extract(NAME, DigestSelector(artifact.blobs[0].digest)) == b"alpha"


def test_extract_requires_selector_for_multiple_blobs(store):
    store.create(NAME, _sources(("a.txt", b"alpha"), ("b.txt", b"beta")))
    with pytest.raises(SelectorRequiredError):
        store.extract(NAME)


def test_extract_single_blob_without_selector(store):
    store.create(NAME, _sources(("a.txt", b"alpha")))
    assert store.extract(NAME) == b"alpha"


def test_extract_title_not_found_and_duplicate(store):
    store.create(NAME, _sources(("a.txt", b"one"), ("a.txt", b"two")))
    with pytest.raises(NotFoundError):
        store.extract(NAME, TitleSelector("zzz"))
    with pytest.raises(AmbiguousSelectorError):
        store.extract(NAME, TitleSelector("a.txt"))


def test_extract_options_reject_both_selectors():
    with pytest.raises(InvalidSelectorError):
        ArtifactExtractOptions(title="a", digest=digests.compute(b"a")).selector()


def test_remove_and_remove_all(store):
    one = store.create("localhost/one:latest", _sources(("a", b"a")))
    two = store.create("localhost/two:latest", _sources(("b", b"b")))
    assert store.remove("one") == one.digest
    assert store.remove_all() == [two.digest]
    assert store.list() == []
    assert store.remove_all() == []


def test_export_is_a_verified_snapshot(store):
    store.create(NAME, _sources(("a.txt", b"alpha")))
    bundle = store.export(NAME)
    bundle.verify()
    store.append(NAME, _sources(("b.txt", b"beta")))
    assert len(bundle.artifact.blobs) == 1


def test_import_bundle_replaces(store):
    store.create(NAME, _sources(("a.txt", b"alpha")))
    other = LocalArtifactStore()
    other.create("localhost/src:latest", _sources(("z.txt", b"zeta")))
    imported = store.import_bundle(NAME, other.export("src"))
    assert imported.name == NAME
    assert store.extract(NAME) == b"zeta"


def test_inspect_remote_needs_engine(store):
    store.create(NAME, _sources(("a.txt", b"alpha")))
    with pytest.raises(ValidationError):
        store.inspect(NAME, remote=True)


def test_persistence_round_trip(tmp_path):
    path = tmp_path / "store"
    store = LocalArtifactStore(path)
    artifact = store.create(NAME, _sources(("a.txt", b"alpha")), annotations={"k": "v"})
    store.append(NAME, _sources(("b.txt", b"beta")))

    reloaded = LocalArtifactStore(path)
    restored = reloaded.get(NAME)
    assert restored.digest == store.get(NAME).digest
    assert restored.digest != artifact.digest
    assert reloaded.extract(NAME, TitleSelector("b.txt")) == b"beta"
    assert (path / "index.json").exists()


def test_persistence_removes_unreferenced_blobs(tmp_path):
    path = tmp_path / "store"
    store = LocalArtifactStore(path)
    artifact = store.create(NAME, _sources(("a.txt", b"alpha")))
    blob_file = path / "blobs" / "sha256" / digests.hex_part(artifact.blobs[0].digest)
    assert blob_file.exists()
    store.remove(NAME)
    assert not blob_file.exists()


def test_failed_save_leaves_store_unchanged(tmp_path):
    path = tmp_path / "store"
    store = LocalArtifactStore(path)
    kept = store.create("localhost/kept:latest", _sources(("k.txt", b"kept")))
    blocker = path / "index.json.tmp"
    blocker.mkdir()

    with pytest.raises(OSError):
        store.create(NAME, _sources(("a.txt", b"alpha")))
    with pytest.raises(OSError):
        store.remove("kept")
    assert not store.exists(NAME)
    assert store.list() == [kept]

    blocker.rmdir()
    store.create(NAME, _sources(("a.txt", b"alpha")))
    assert [a.name for a in LocalArtifactStore(path).list()] == ["localhost/kept:latest", NAME]
