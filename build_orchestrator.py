import concurrent.futures
import logging
import threading
from typing import Dict, Iterable, List, Optional, Tuple

from cache_index import CacheSourceIndex
from config import BuildReport, LayerRecord, ResolutionResult, StageStatus, Verdict
from errors import BuildCancelled, ExecutionError
from fingerprint import short
from resolver import plan as plan_stages
from resolver import resolve
from stage_graph import StageGraph

logger = logging.getLogger(__name__)


class BuildOrchestrator:
    """Schedules stage builds over a StageGraph and feeds the cache index.

    Stages whose dependencies are done run concurrently on a thread pool;
    instructions inside one stage always run in order. Every layer built
    here is registered into the session index so dependent stages see it.
    """

    def __init__(self, runtime, image_source=None, workers: int = 4, tracker=None,
                 inspect_workers: Optional[int] = None):
        self.runtime = runtime
        self.image_source = image_source
        self.workers = max(1, workers)
        self.tracker = tracker
        self.inspect_workers = inspect_workers
        self._cancel_event = threading.Event()

    def cancel(self):
        """Stop scheduling new stages and stop running stages before their next instruction"""
        self._cancel_event.set()
        hook = getattr(self.runtime, "cancel", None)
        if callable(hook):
            hook()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def prepare_index(self, source_images: Iterable[str]) -> CacheSourceIndex:
        index = CacheSourceIndex()
        refs = list(source_images)
        if refs:
            if self.image_source is None:
                logger.warning("No image source configured; ignoring %d cache-from images", len(refs))
            else:
                index.register_images(refs, self.image_source, workers=self.inspect_workers)
        return index

    def plan(self, graph: StageGraph, target: Optional[str] = None,
             source_images: Iterable[str] = ()) -> Dict[str, ResolutionResult]:
        """Dry run: verdicts for target and its dependencies without executing anything"""
        index = self.prepare_index(source_images)
        return plan_stages(graph, target, index)

    def build(self, graph: StageGraph, target: Optional[str] = None, source_images: Iterable[str] = (),
              publish: Optional[Dict[str, str]] = None) -> BuildReport:
        target = target or graph.target()
        order = graph.subgraph_order(target)
        index = self.prepare_index(source_images)
        report = BuildReport(target=target, order=order)
        publish = publish or {}
        logger.info("Building %s: %d stages, %d cached layers available", target, len(order), len(index))

        artifacts: Dict[str, str] = {}
        done = set()
        blocked = set()
        pending: List[str] = list(order)
        running: Dict[concurrent.futures.Future, str] = {}
        results: Dict[str, ResolutionResult] = {}

        with concurrent.futures.ThreadPoolExecutor(max_workers=self.workers,
                                                   thread_name_prefix="stagecache-stage") as pool:
            while pending or running:
                if self.cancelled:
                    report.skipped.extend(pending)
                    pending = []
                for name in list(pending):
                    deps = graph.dependencies(name)
                    if any(dep in blocked for dep in deps):
                        pending.remove(name)
                        blocked.add(name)
                        report.skipped.append(name)
                        logger.warning("Skipping stage %s: a dependency did not complete", name)
                    elif all(dep in done for dep in deps):
                        pending.remove(name)
                        dep_artifacts = {dep: artifacts[dep] for dep in deps}
                        future = pool.submit(self._build_stage, graph, name, index, dep_artifacts)
                        running[future] = name
                if not running:
                    break

                finished, _ = concurrent.futures.wait(running, return_when=concurrent.futures.FIRST_COMPLETED)
                for future in finished:
                    name = running.pop(future)
                    result, error = future.result()
                    results[name] = result
                    if result.status == StageStatus.COMPLETE:
                        done.add(name)
                        artifacts[name] = result.final_artifact
                        if name in publish:
                            self._publish(graph, name, publish[name], results, report)
                    else:
                        blocked.add(name)
                        if error is not None:
                            report.failed[name] = error

        report.results = {name: results[name] for name in order if name in results}
        report.skipped = [name for name in order if name in report.skipped]

        if self.tracker is not None:
            self.tracker.record_build(report)

        if report.failed:
            first = next(name for name in order if name in report.failed)
            error = report.failed[first]
            error.report = report
            raise error
        if self.cancelled and not report.succeeded:
            raise BuildCancelled(report)
        return report

    def _build_stage(self, graph: StageGraph, name: str, index: CacheSourceIndex,
                     dep_artifacts: Dict[str, str]) -> Tuple[ResolutionResult, Optional[ExecutionError]]:
        visible = graph.ancestors(name) | {name}
        result = resolve(graph, name, index.view(visible))
        stage = graph.stage(name)

        base_stage = graph.base_stage(name)
        artifact = dep_artifacts[base_stage] if base_stage is not None else stage.base
        sources = {ref: dep_artifacts[dep] for ref, dep in graph.source_stages(name).items()}

        for item, instruction in zip(result.instructions, stage.instructions):
            if item.verdict == Verdict.CACHED:
                artifact = item.artifact
                logger.info("[%s] #%d CACHED %s", name, item.index, instruction.text)
                continue
            if self.cancelled:
                logger.warning("[%s] cancelled before #%d", name, item.index)
                result.status = StageStatus.CANCELLED
                return result, None
            logger.info("[%s] #%d BUILD  %s", name, item.index, instruction.text)
            try:
                stage_sources = {ref: sources[ref] for ref in instruction.sources}
                artifact = self.runtime.execute(instruction, artifact, sources=stage_sources)
            except Exception as e:
                if self.cancelled:
                    # The runtime's cancel hook aborts in-flight work
                    logger.warning("[%s] #%d interrupted by cancel: %s", name, item.index, e)
                    result.status = StageStatus.CANCELLED
                    return result, None
                cause = e.cause if isinstance(e, ExecutionError) and e.cause is not None else e
                logger.error("[%s] #%d failed: %s", name, item.index, cause)
                result.status = StageStatus.FAILED
                return result, ExecutionError(name, item.index, instruction.text, cause=cause)
            item.artifact = artifact
            index.register(LayerRecord(item.fingerprint, artifact, name))

        result.final_artifact = artifact
        logger.info("[%s] done: %d cached, %d built, final %s",
                    name, result.cached_count, result.built_count, short(result.final_fingerprint))
        return result, None

    def _publish(self, graph: StageGraph, name: str, reference: str,
                 results: Dict[str, ResolutionResult], report: BuildReport):
        if self.image_source is None:
            logger.warning("No image source configured; cannot publish %s", reference)
            return
        history: List[LayerRecord] = []
        for stage_name in graph.lineage(name):
            for item in results[stage_name].instructions:
                history.append(LayerRecord(item.fingerprint, item.artifact, stage_name))
        try:
            self.image_source.publish(reference, results[name].final_artifact, history)
        except Exception as e:
            logger.warning("Failed to publish %s as %s: %s", name, reference, e)
            return
        report.published[name] = reference
        logger.info("Published stage %s as %s", name, reference)
