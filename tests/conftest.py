import hashlib
import threading

import pytest

from container_runtime import Runtime
from image_sources import MemoryImageSource
from parser import DeclarationParser
from stage_graph import StageGraphBuilder

# The multi-stage example: two independent stages copied into a final stage
MULTISTAGE_DOCKERFILE = """\
FROM debian AS stage1
ENV DEBIAN_FRONTEND=noninteractive LAYER=stage1
RUN touch /tmp/stage1.txt && echo -e "\\e[91m1: not cached\\e[0m"

FROM debian AS stage2
ENV DEBIAN_FRONTEND=noninteractive LAYER=stage2
RUN touch /tmp/stage2.txt && echo -e "\\e[91m2: not cached\\e[0m"

FROM debian
ENV DEBIAN_FRONTEND=noninteractive LAYER=final
COPY --from=stage1 /tmp/* /tmp/
COPY --from=stage2 /tmp/* /tmp/
RUN ls -l /tmp/ && echo -e "\\e[91m3: not cached\\e[0m"
"""

# Stage 2 is based on the published image of stage 1
PUBLISHED_BASE_DOCKERFILE = """\
FROM debian AS stage1
ENV DEBIAN_FRONTEND=noninteractive
RUN touch /tmp/stage1.txt && echo -e "\\e[91m1: not cached\\e[0m"

FROM tmp/multistage/01:stage_stage1 AS stage2
ENV DEBIAN_FRONTEND=noninteractive
RUN touch /tmp/stage2.txt && echo -e "\\e[91m2: not cached\\e[0m"

FROM debian
ENV DEBIAN_FRONTEND=noninteractive
COPY --from=stage1 /tmp/* /tmp/
COPY --from=stage2 /tmp/* /tmp/
RUN ls -l /tmp/ && echo -e "\\e[91m3: not cached\\e[0m"
"""


class FakeRuntime(Runtime):
    """Runtime that derives artifacts from its inputs and records every call"""

    def __init__(self, fail_on=(), on_execute=None):
        self.fail_on = set(fail_on)
        self.on_execute = on_execute
        self.calls = []
        self.cancelled = False
        self._lock = threading.Lock()

    def execute(self, instruction, base_artifact, sources=None):
        with self._lock:
            self.calls.append((instruction.text, base_artifact, dict(sources or {})))
        if self.on_execute is not None:
            self.on_execute(instruction)
        if instruction.text in self.fail_on:
            raise RuntimeError(f"exit code 1: {instruction.text}")
        payload = "|".join([base_artifact, instruction.text] + sorted(f"{k}={v}" for k, v in (sources or {}).items()))
        return "art:" + hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]

    def cancel(self):
        self.cancelled = True

    @property
    def executed(self):
        return [text for text, _, _ in self.calls]


def make_graph(text, base_identity=None):
    stages = DeclarationParser().parse_dockerfile_text(text)
    return StageGraphBuilder(base_identity=base_identity).build(stages)


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def image_source():
    return MemoryImageSource()


@pytest.fixture
def multistage_graph():
    return make_graph(MULTISTAGE_DOCKERFILE)
