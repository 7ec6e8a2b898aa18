from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from enum import Enum


# Image label carrying the base64(JSON) fingerprint history of an image
IMAGE_LABEL_VERSION = "io.stagecache.version"
IMAGE_LABEL_HISTORY_B64 = "io.stagecache.history_b64"

# Directives that leave the filesystem untouched
METADATA_KEYWORDS = {
    "ENV", "WORKDIR", "USER", "LABEL", "EXPOSE", "CMD", "ENTRYPOINT",
    "VOLUME", "STOPSIGNAL", "SHELL", "ARG", "HEALTHCHECK", "ONBUILD",
}
# Subset accepted by `docker commit --change`; the rest only affect the fingerprint
COMMIT_CHANGE_KEYWORDS = {"CMD", "ENTRYPOINT", "ENV", "EXPOSE", "LABEL", "ONBUILD", "USER", "VOLUME", "WORKDIR"}
KNOWN_KEYWORDS = METADATA_KEYWORDS | {"RUN", "COPY", "ADD", "MAINTAINER"}


class Verdict(Enum):
    CACHED = "cached"
    BUILT = "built"


class StageStatus(Enum):
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Instruction:
    """A single build directive as literal text"""
    keyword: str
    text: str
    sources: Tuple[str, ...] = ()  # --from= references

    @property
    def args(self) -> str:
        """Directive text without the keyword"""
        parts = self.text.split(None, 1)
        return parts[1] if len(parts) > 1 else ""


@dataclass(frozen=True)
class Stage:
    name: str
    base: str
    instructions: Tuple[Instruction, ...] = ()


@dataclass(frozen=True)
class LayerRecord:
    """A produced (or reused) layer keyed by its fingerprint.

    origin is the source image the record was ingested from; None means the
    layer was produced during the current build session.
    """
    fingerprint: str
    artifact: str
    stage: str
    origin: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        return {"fingerprint": self.fingerprint, "artifact": self.artifact, "stage": self.stage}


@dataclass
class InstructionResult:
    index: int
    text: str
    fingerprint: str
    verdict: Verdict
    artifact: Optional[str] = None


@dataclass
class ResolutionResult:
    stage: str
    base_fingerprint: str
    instructions: List[InstructionResult] = field(default_factory=list)
    final_fingerprint: str = ""
    final_artifact: Optional[str] = None
    status: StageStatus = StageStatus.COMPLETE

    @property
    def cached_count(self) -> int:
        return sum(1 for r in self.instructions if r.verdict == Verdict.CACHED)

    @property
    def built_count(self) -> int:
        return sum(1 for r in self.instructions if r.verdict == Verdict.BUILT)

    @property
    def fully_cached(self) -> bool:
        return self.built_count == 0

    @property
    def verdicts(self) -> List[Verdict]:
        return [r.verdict for r in self.instructions]

    def to_dict(self) -> Dict:
        return {
            "stage": self.stage,
            "status": self.status.value,
            "base_fingerprint": self.base_fingerprint,
            "final_fingerprint": self.final_fingerprint,
            "instructions": [
                {
                    "index": r.index,
                    "text": r.text,
                    "fingerprint": r.fingerprint,
                    "verdict": r.verdict.value,
                }
                for r in self.instructions
            ],
        }


@dataclass
class BuildReport:
    target: str
    order: List[str] = field(default_factory=list)
    results: Dict[str, ResolutionResult] = field(default_factory=dict)
    failed: Dict[str, Exception] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    published: Dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return not self.failed and not self.skipped and all(
            r.status == StageStatus.COMPLETE for r in self.results.values()
        )

    def to_dict(self) -> Dict:
        return {
            "target": self.target,
            "order": list(self.order),
            "stages": {name: self.results[name].to_dict() for name in self.order if name in self.results},
            "failed": {name: str(err) for name, err in self.failed.items()},
            "skipped": list(self.skipped),
            "published": dict(self.published),
        }


@dataclass
class BuildConfig:
    workers: int = 4
    backend: str = "local"  # local | docker
    store_path: str = "/tmp/stagecache-images"
    history_file: str = ".stagecache_history.json"
    inspect_workers: int = 4
    context_dir: str = "."
