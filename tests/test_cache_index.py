"""Tests for cache_index.py: first-writer-wins index of layer records."""

import itertools
import threading

import pytest

from cache_index import CacheSourceIndex
from config import LayerRecord
from image_sources import MemoryImageSource


def fp(n):
    return "sha256:" + f"{n:064x}"


@pytest.fixture
def source():
    src = MemoryImageSource()
    src.publish("repo:a", "img-a", [LayerRecord(fp(1), "layer-1", "a"), LayerRecord(fp(2), "layer-2", "a")])
    src.publish("repo:b", "img-b", [LayerRecord(fp(1), "layer-1", "a"), LayerRecord(fp(3), "layer-3", "b")])
    src.publish("repo:c", "img-c", [LayerRecord(fp(4), "layer-4", "c")])
    return src


class TestRegister:
    def test_lookup_miss(self):
        assert CacheSourceIndex().lookup(fp(1)) is None

    def test_first_writer_wins(self):
        index = CacheSourceIndex()
        assert index.register(LayerRecord(fp(1), "first", "a")) is True
        assert index.register(LayerRecord(fp(1), "second", "b", origin="repo:x")) is False
        assert index.lookup(fp(1)).artifact == "first"
        assert len(index) == 1

    def test_conflicting_source_is_logged(self, caplog):
        index = CacheSourceIndex()
        index.register(LayerRecord(fp(1), "first", "a", origin="repo:a"))
        index.register(LayerRecord(fp(1), "other", "a", origin="repo:b"))
        assert "conflicting record" in caplog.text

    def test_concurrent_register_keeps_one_record(self):
        index = CacheSourceIndex()
        winners = []
        barrier = threading.Barrier(8)

        def worker(n):
            barrier.wait()
            if index.register(LayerRecord(fp(7), f"artifact-{n}", f"stage-{n}")):
                winners.append(n)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(winners) == 1
        assert index.lookup(fp(7)).artifact == f"artifact-{winners[0]}"


class TestRegisterImages:
    def test_register_image(self, source):
        index = CacheSourceIndex()
        assert index.register_image("repo:a", source) == 2
        assert fp(1) in index
        assert index.lookup(fp(2)).origin == "repo:a"
        assert index.sources == ["repo:a"]

    def test_missing_image_is_soft_failure(self, source, caplog):
        index = CacheSourceIndex()
        assert index.register_image("repo:missing", source) == 0
        assert len(index) == 0
        assert "repo:missing" in caplog.text

    def test_register_images_counts(self, source):
        index = CacheSourceIndex()
        counts = index.register_images(["repo:b", "repo:a", "repo:missing"], source, workers=2)
        assert counts == {"repo:a": 2, "repo:b": 1, "repo:missing": 0}
        assert index.fingerprints() == {fp(1), fp(2), fp(3)}

    def test_order_independent(self, source):
        refs = ["repo:a", "repo:b", "repo:c"]
        baseline = None
        for perm in itertools.permutations(refs):
            index = CacheSourceIndex()
            index.register_images(perm, source, workers=3)
            snapshot = {f: index.lookup(f) for f in map(fp, range(6))}
            if baseline is None:
                baseline = snapshot
            assert snapshot == baseline

    def test_empty(self, source):
        assert CacheSourceIndex().register_images([], source) == {}


class TestView:
    def test_source_records_always_visible(self, source):
        index = CacheSourceIndex()
        index.register_image("repo:a", source)
        assert index.view(set()).lookup(fp(1)) is not None

    def test_session_records_visible_to_listed_stages(self):
        index = CacheSourceIndex()
        index.register(LayerRecord(fp(9), "built", "producer"))
        assert index.view({"producer", "consumer"}).lookup(fp(9)).artifact == "built"
        assert index.view({"sibling"}).lookup(fp(9)) is None
        assert fp(9) not in index.view({"sibling"})

    def test_every_producer_counts(self):
        index = CacheSourceIndex()
        index.register(LayerRecord(fp(9), "from-a", "a"))
        index.register(LayerRecord(fp(9), "from-b", "b"))
        assert index.view({"b"}).lookup(fp(9)).artifact == "from-a"
