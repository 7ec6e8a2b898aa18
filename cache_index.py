"""
Cache source index: fingerprint -> LayerRecord.

Aggregated from the fingerprint histories of the supplied source images plus
every layer produced earlier in the same build session. Inserts are
compare-and-set (first writer wins) and nothing is evicted within a session.
The index has no notion of recency or image name priority.

History fetches run on a small thread pool. Tune with:
  - STAGECACHE_INSPECT_WORKERS: int, default min(4, len(references))
"""

import concurrent.futures
import logging
import os
import threading
from typing import Dict, Iterable, List, Optional, Set

from config import LayerRecord
from errors import RegistrationError

logger = logging.getLogger(__name__)


class CacheSourceIndex:
    def __init__(self):
        self._records: Dict[str, LayerRecord] = {}
        # fingerprint -> every stage that produced it during this session
        self._producers: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()
        self.sources: List[str] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, fp: str) -> bool:
        return self.lookup(fp) is not None

    def fingerprints(self) -> Set[str]:
        with self._lock:
            return set(self._records)

    def records(self) -> List[LayerRecord]:
        with self._lock:
            return list(self._records.values())

    def lookup(self, fp: str) -> Optional[LayerRecord]:
        with self._lock:
            return self._records.get(fp)

    def register(self, record: LayerRecord) -> bool:
        """Insert record unless its fingerprint is already known"""
        with self._lock:
            if record.origin is None:
                self._producers.setdefault(record.fingerprint, set()).add(record.stage)
            existing = self._records.get(record.fingerprint)
            if existing is None:
                self._records[record.fingerprint] = record
                return True
        if existing.artifact != record.artifact and record.origin is not None:
            logger.warning(
                "Ignoring conflicting record for %s from %s (already provided by %s)",
                record.fingerprint, record.origin, existing.origin or f"stage {existing.stage}",
            )
        return False

    def register_image(self, reference: str, source) -> int:
        """Ingest the fingerprint history of one source image.

        A history that cannot be fetched only excludes this image.
        """
        try:
            history = source.fetch_history(reference)
        except RegistrationError as e:
            logger.warning("%s; excluding it from the cache sources", e)
            return 0
        return self._merge(reference, history)

    def register_images(self, references: Iterable[str], source, workers: Optional[int] = None) -> Dict[str, int]:
        """Ingest several source images.

        Histories are fetched concurrently and merged in sorted reference order,
        so neither argument order nor fetch completion order affects the index.
        """
        refs = sorted(set(references))
        if not refs:
            return {}
        if workers is None:
            env_workers = os.getenv("STAGECACHE_INSPECT_WORKERS", "")
            workers = int(env_workers) if env_workers.isdigit() else min(4, len(refs))
        workers = max(1, workers)

        histories: Dict[str, Optional[List[LayerRecord]]] = {}
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="stagecache-fetch") as pool:
            futures = {pool.submit(source.fetch_history, ref): ref for ref in refs}
            for future in concurrent.futures.as_completed(futures):
                ref = futures[future]
                try:
                    histories[ref] = future.result()
                except RegistrationError as e:
                    logger.warning("%s; excluding it from the cache sources", e)
                    histories[ref] = None

        counts: Dict[str, int] = {}
        for ref in refs:
            history = histories.get(ref)
            counts[ref] = 0 if history is None else self._merge(ref, history)
        return counts

    def _merge(self, reference: str, history: Iterable[LayerRecord]) -> int:
        added = 0
        for record in history:
            if record.origin != reference:
                record = LayerRecord(record.fingerprint, record.artifact, record.stage, origin=reference)
            if self.register(record):
                added += 1
        self.sources.append(reference)
        logger.info("Registered cache source %s (%d new layers)", reference, added)
        return added

    def is_visible(self, fp: str, visible_stages: Set[str]) -> bool:
        with self._lock:
            record = self._records.get(fp)
            if record is None:
                return False
            if record.origin is not None:
                return True
            return bool(self._producers.get(fp, set()) & visible_stages)

    def view(self, visible_stages: Iterable[str]) -> "IndexView":
        return IndexView(self, set(visible_stages))


class IndexView:
    """Read-only lookup over a CacheSourceIndex.

    Sees every source-image record but only the session-produced records whose
    producing stage is in visible_stages. A stage sharing a prefix with an
    unrelated stage built earlier in the session therefore rebuilds that prefix
    (a deliberate false negative), even with a single worker, so verdicts never
    depend on scheduling.
    """

    def __init__(self, index: CacheSourceIndex, visible_stages: Set[str]):
        self.index = index
        self.visible_stages = visible_stages

    def lookup(self, fp: str) -> Optional[LayerRecord]:
        if self.index.is_visible(fp, self.visible_stages):
            return self.index.lookup(fp)
        return None

    def __contains__(self, fp: str) -> bool:
        return self.lookup(fp) is not None
