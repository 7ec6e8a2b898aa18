from typing import Dict, Optional

from config import InstructionResult, ResolutionResult, Verdict
from stage_graph import StageGraph


def resolve(graph: StageGraph, stage_name: str, index) -> ResolutionResult:
    """Decide CACHED/BUILT for every instruction of a stage.

    Layer caching is strictly sequential: a hit at position k is honored only
    if positions 0..k-1 were hits too. The final fingerprint is the last chain
    fingerprint whether or not it was cached.

    index is anything with lookup(fingerprint) -> Optional[LayerRecord]
    (a CacheSourceIndex or one of its views).
    """
    stage = graph.stage(stage_name)
    chain = graph.chain(stage_name)
    result = ResolutionResult(
        stage=stage_name,
        base_fingerprint=graph.base_fingerprint(stage_name),
        final_fingerprint=graph.final_fingerprint(stage_name),
    )

    eligible = True
    for i, (instruction, fp) in enumerate(zip(stage.instructions, chain)):
        record = index.lookup(fp) if eligible else None
        if record is not None:
            result.instructions.append(InstructionResult(i, instruction.text, fp, Verdict.CACHED, record.artifact))
        else:
            eligible = False
            result.instructions.append(InstructionResult(i, instruction.text, fp, Verdict.BUILT))
    return result


def plan(graph: StageGraph, target: Optional[str], index) -> Dict[str, ResolutionResult]:
    """Resolve the target and everything it depends on without building anything"""
    return {name: resolve(graph, name, index) for name in graph.subgraph_order(target)}
