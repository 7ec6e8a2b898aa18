import heapq
import logging
from typing import Callable, Dict, List, Optional, Sequence, Set

from config import Stage
from errors import CycleError, ParseError, UnknownStageError
from fingerprint import fingerprint, instruction_content, seed_fingerprint

logger = logging.getLogger(__name__)


class StageGraph:
    """Dependency DAG of stages plus the fingerprint chain of every stage.

    Built once per build invocation by StageGraphBuilder and immutable afterwards.
    """

    def __init__(self, stages: List[Stage], deps: Dict[str, List[str]],
                 source_refs: Dict[str, Dict[str, str]], order: List[str],
                 base_fps: Dict[str, str], chains: Dict[str, List[str]],
                 base_stages: Dict[str, Optional[str]]):
        self._stages = {s.name: s for s in stages}
        self._base_stages = base_stages
        self._positions = {s.name: i for i, s in enumerate(stages)}
        self._deps = deps
        self._source_refs = source_refs
        self._order = order
        self._base_fps = base_fps
        self._chains = chains
        self._dependents: Dict[str, List[str]] = {s.name: [] for s in stages}
        for name in order:
            for dep in deps[name]:
                self._dependents[dep].append(name)

    def __contains__(self, name: str) -> bool:
        return name in self._stages

    def __len__(self) -> int:
        return len(self._stages)

    @property
    def order(self) -> List[str]:
        return list(self._order)

    @property
    def names(self) -> List[str]:
        return sorted(self._stages, key=self._positions.get)

    def target(self) -> str:
        """Default build target: the last stage of the description"""
        return self.names[-1]

    def stage(self, name: str) -> Stage:
        try:
            return self._stages[name]
        except KeyError:
            raise UnknownStageError(None, name) from None

    def dependencies(self, name: str) -> List[str]:
        self.stage(name)
        return list(self._deps[name])

    def dependents(self, name: str) -> List[str]:
        self.stage(name)
        return list(self._dependents[name])

    def base_stage(self, name: str) -> Optional[str]:
        """Stage this one is built FROM, or None for an external image"""
        self.stage(name)
        return self._base_stages[name]

    def source_stages(self, name: str) -> Dict[str, str]:
        """--from= reference as written -> resolved stage name"""
        self.stage(name)
        return dict(self._source_refs[name])

    def ancestors(self, name: str) -> Set[str]:
        seen: Set[str] = set()
        stack = list(self.dependencies(name))
        while stack:
            node = stack.pop()
            if node in seen:
                continue
            seen.add(node)
            stack.extend(self._deps[node])
        return seen

    def descendants(self, name: str) -> Set[str]:
        seen: Set[str] = set()
        stack = list(self.dependents(name))
        while stack:
            node = stack.pop()
            if node in seen:
                continue
            seen.add(node)
            stack.extend(self._dependents[node])
        return seen

    def subgraph_order(self, target: Optional[str] = None) -> List[str]:
        """Target and its transitive dependencies, in topological order"""
        target = target or self.target()
        wanted = self.ancestors(target) | {target}
        return [name for name in self._order if name in wanted]

    def base_fingerprint(self, name: str) -> str:
        self.stage(name)
        return self._base_fps[name]

    def chain(self, name: str) -> List[str]:
        self.stage(name)
        return list(self._chains[name])

    def final_fingerprint(self, name: str) -> str:
        chain = self.chain(name)
        return chain[-1] if chain else self._base_fps[name]

    def lineage(self, name: str) -> List[str]:
        """Stage names along the base line, outermost base stage first"""
        line = [name]
        base = self.base_stage(name)
        while base is not None:
            line.append(base)
            base = self.base_stage(base)
        return list(reversed(line))


class StageGraphBuilder:
    """Assembles parsed stages into a StageGraph.

    base_identity maps an external image reference to its content identity;
    when it is missing or returns None the reference itself seeds the chain.
    """

    def __init__(self, base_identity: Optional[Callable[[str], Optional[str]]] = None):
        self.base_identity = base_identity

    def build(self, stages: Sequence[Stage]) -> StageGraph:
        stages = list(stages)
        if not stages:
            raise ParseError("Build description has no stages")
        names = [s.name for s in stages]
        seen: Set[str] = set()
        for name in names:
            if name in seen:
                raise ParseError(f"Duplicate stage name '{name}'")
            seen.add(name)

        deps: Dict[str, List[str]] = {}
        source_refs: Dict[str, Dict[str, str]] = {}
        base_stages: Dict[str, Optional[str]] = {}
        earlier: Set[str] = set()
        for stage in stages:
            stage_deps: List[str] = []
            # FROM only names stages defined above; anything else is an image
            base_stages[stage.name] = stage.base if stage.base in earlier else None
            earlier.add(stage.name)
            if base_stages[stage.name] is not None:
                stage_deps.append(stage.base)
            refs: Dict[str, str] = {}
            for instruction in stage.instructions:
                for ref in instruction.sources:
                    resolved = self._resolve_ref(stage.name, ref, names)
                    refs[ref] = resolved
                    if resolved not in stage_deps:
                        stage_deps.append(resolved)
            deps[stage.name] = stage_deps
            source_refs[stage.name] = refs

        self._check_cycles(names, deps)
        order = self._topological_order(names, deps)

        base_fps: Dict[str, str] = {}
        chains: Dict[str, List[str]] = {}
        stage_map = {s.name: s for s in stages}
        for name in order:
            stage = stage_map[name]
            if base_stages[name] is not None:
                base_fp = self._final(base_stages[name], base_fps, chains)
            else:
                base_fp = self._external_identity(stage.base)
            source_fps = {ref: self._final(dep, base_fps, chains) for ref, dep in source_refs[name].items()}
            chain: List[str] = []
            current = base_fp
            for instruction in stage.instructions:
                current = fingerprint(current, instruction_content(instruction, source_fps))
                chain.append(current)
            base_fps[name] = base_fp
            chains[name] = chain
            logger.debug("stage %s: %d instructions, base %s", name, len(chain), base_fp)

        return StageGraph(stages, deps, source_refs, order, base_fps, chains, base_stages)

    @staticmethod
    def _final(name: str, base_fps: Dict[str, str], chains: Dict[str, List[str]]) -> str:
        chain = chains[name]
        return chain[-1] if chain else base_fps[name]

    def _external_identity(self, reference: str) -> str:
        if self.base_identity is not None:
            identity = self.base_identity(reference)
            if identity:
                return identity
        return seed_fingerprint(reference)

    @staticmethod
    def _resolve_ref(stage: str, ref: str, names: List[str]) -> str:
        if ref in names:
            return ref
        if ref.isdigit() and int(ref) < len(names):
            return names[int(ref)]
        raise UnknownStageError(stage, ref)

    @staticmethod
    def _check_cycles(names: List[str], deps: Dict[str, List[str]]):
        """Raise CycleError on the first back edge found by DFS"""
        visited: Set[str] = set()
        path: List[str] = []
        on_path: Set[str] = set()

        def dfs(node: str):
            visited.add(node)
            path.append(node)
            on_path.add(node)
            for neighbor in deps[node]:
                if neighbor in on_path:
                    start = path.index(neighbor)
                    raise CycleError(path[start:] + [neighbor])
                if neighbor not in visited:
                    dfs(neighbor)
            on_path.remove(node)
            path.pop()

        for name in names:
            if name not in visited:
                dfs(name)

    @staticmethod
    def _topological_order(names: List[str], deps: Dict[str, List[str]]) -> List[str]:
        """Kahn's algorithm; ties broken by position in the description"""
        position = {name: i for i, name in enumerate(names)}
        in_degree = {name: len(deps[name]) for name in names}
        dependents: Dict[str, List[str]] = {name: [] for name in names}
        for name in names:
            for dep in deps[name]:
                dependents[dep].append(name)

        ready = [position[name] for name in names if in_degree[name] == 0]
        heapq.heapify(ready)
        result: List[str] = []
        while ready:
            node = names[heapq.heappop(ready)]
            result.append(node)
            for child in dependents[node]:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    heapq.heappush(ready, position[child])
        return result
