from typing import List, Optional


class StageCacheError(Exception):
    """Base class for all stagecache errors"""


class ParseError(StageCacheError, ValueError):
    """Malformed build description"""

    def __init__(self, message: str, line: Optional[int] = None):
        self.line = line
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)


class CycleError(StageCacheError, ValueError):
    """Stage base/--from references form a cycle"""

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(f"Circular stage dependency: {' -> '.join(self.cycle)}")


class UnknownStageError(StageCacheError, ValueError):
    """A stage reference names a stage that is not in the build description"""

    def __init__(self, stage: Optional[str], reference: str):
        self.stage = stage
        self.reference = reference
        if stage is None:
            super().__init__(f"Unknown stage '{reference}'")
        else:
            super().__init__(f"Stage '{stage}' references unknown stage '{reference}'")


class ExecutionError(StageCacheError, RuntimeError):
    """An instruction failed while being built.

    Carries enough context (stage, instruction index, underlying cause) to
    re-run just the failing stage. The orchestrator attaches the partial
    BuildReport as ``report`` before surfacing the error.
    """

    def __init__(self, stage: str, index: int, instruction: str, cause=None, report=None):
        self.stage = stage
        self.index = index
        self.instruction = instruction
        self.cause = cause
        self.report = report
        msg = f"Stage '{stage}' instruction #{index} failed: {instruction}"
        if cause is not None:
            msg += f" ({cause})"
        super().__init__(msg)


class RegistrationError(StageCacheError, RuntimeError):
    """A source image's history could not be fetched"""

    def __init__(self, reference: str, cause=None):
        self.reference = reference
        self.cause = cause
        msg = f"Cannot read cache history of '{reference}'"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)


class BuildCancelled(StageCacheError, RuntimeError):
    """The build was cancelled before all stages finished"""

    def __init__(self, report=None):
        self.report = report
        super().__init__("Build cancelled")
