"""Tests for resolver.py: strict prefix matching of cached layers."""

from cache_index import CacheSourceIndex
from config import LayerRecord, Verdict
from conftest import MULTISTAGE_DOCKERFILE, make_graph
from resolver import plan, resolve

FIVE_STEPS = """\
FROM debian AS app
ENV A=1
RUN step-1
RUN step-2
RUN step-3
RUN step-4
"""


def index_with(graph, stage, positions):
    index = CacheSourceIndex()
    chain = graph.chain(stage)
    for i in positions:
        index.register(LayerRecord(chain[i], f"layer-{i}", stage, origin="repo:cache"))
    return index


class TestResolve:
    def test_empty_index_builds_everything(self):
        graph = make_graph(FIVE_STEPS)
        result = resolve(graph, "app", CacheSourceIndex())
        assert result.verdicts == [Verdict.BUILT] * 5
        assert result.final_fingerprint == graph.chain("app")[-1]

    def test_full_hit(self):
        graph = make_graph(FIVE_STEPS)
        result = resolve(graph, "app", index_with(graph, "app", range(5)))
        assert result.fully_cached
        assert [r.artifact for r in result.instructions] == [f"layer-{i}" for i in range(5)]

    def test_prefix_hit(self):
        graph = make_graph(FIVE_STEPS)
        result = resolve(graph, "app", index_with(graph, "app", [0, 1]))
        assert result.verdicts == [Verdict.CACHED] * 2 + [Verdict.BUILT] * 3
        assert result.cached_count == 2
        assert result.built_count == 3

    def test_sparse_hits_are_not_honored(self):
        graph = make_graph(FIVE_STEPS)
        result = resolve(graph, "app", index_with(graph, "app", [0, 2, 3, 4]))
        assert result.verdicts == [Verdict.CACHED] + [Verdict.BUILT] * 4
        assert all(r.artifact is None for r in result.instructions[1:])

    def test_no_hit_after_first_miss(self):
        graph = make_graph(FIVE_STEPS)
        for mask in range(32):
            positions = [i for i in range(5) if mask & (1 << i)]
            verdicts = resolve(graph, "app", index_with(graph, "app", positions)).verdicts
            if Verdict.BUILT in verdicts:
                k = verdicts.index(Verdict.BUILT)
                assert all(v == Verdict.BUILT for v in verdicts[k:])

    def test_final_fingerprint_independent_of_hits(self):
        graph = make_graph(FIVE_STEPS)
        cold = resolve(graph, "app", CacheSourceIndex())
        warm = resolve(graph, "app", index_with(graph, "app", range(5)))
        assert cold.final_fingerprint == warm.final_fingerprint
        assert [r.fingerprint for r in cold.instructions] == [r.fingerprint for r in warm.instructions]

    def test_deterministic(self):
        graph = make_graph(FIVE_STEPS)
        index = index_with(graph, "app", [0, 1, 2])
        assert resolve(graph, "app", index).to_dict() == resolve(graph, "app", index).to_dict()

    def test_stage_without_instructions(self):
        graph = make_graph("FROM debian AS empty\n")
        result = resolve(graph, "empty", CacheSourceIndex())
        assert result.instructions == []
        assert result.final_fingerprint == graph.base_fingerprint("empty")


class TestPlan:
    def test_plan_covers_target_subgraph(self, multistage_graph):
        results = plan(multistage_graph, "stage1", CacheSourceIndex())
        assert list(results) == ["stage1"]
        results = plan(multistage_graph, None, CacheSourceIndex())
        assert list(results) == ["stage1", "stage2", "2"]

    def test_copy_from_misses_when_dependency_changes(self):
        graph = make_graph(MULTISTAGE_DOCKERFILE)
        index = CacheSourceIndex()
        for name in graph.names:
            for i, f in enumerate(graph.chain(name)):
                index.register(LayerRecord(f, f"{name}-{i}", name, origin="repo:old"))
        assert all(r.fully_cached for r in plan(graph, None, index).values())

        changed = make_graph(MULTISTAGE_DOCKERFILE.replace("touch /tmp/stage1.txt", "touch /tmp/one.txt"))
        results = plan(changed, None, index)
        assert results["stage1"].verdicts == [Verdict.CACHED, Verdict.BUILT]
        assert results["stage2"].fully_cached
        assert results["2"].verdicts == [Verdict.CACHED, Verdict.BUILT, Verdict.BUILT, Verdict.BUILT]
