import json
import logging
import os
import shlex
import shutil
import string
import subprocess
import tempfile
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from config import COMMIT_CHANGE_KEYWORDS, Instruction
from errors import ExecutionError
from utils import sudo_prefix

logger = logging.getLogger(__name__)


class Runtime(ABC):
    """Executes one instruction against a base artifact and returns the new artifact"""

    @abstractmethod
    def execute(self, instruction: Instruction, base_artifact: str, sources: Optional[Dict[str, str]] = None) -> str:
        pass

    def cancel(self):
        pass


def split_copy_args(args: str) -> List[str]:
    """COPY/ADD arguments without --flags, JSON form included"""
    args = args.strip()
    if args.startswith("["):
        try:
            words = json.loads(args)
        except ValueError:
            words = shlex.split(args)
    else:
        words = shlex.split(args)
    return [w for w in words if not w.startswith("--")]


class DockerRuntime(Runtime):
    """Builds layers by running commands inside a container and committing snapshots.

    - Creates a short-lived container from the base artifact
    - RUN: executes the command with the image shell, or directly in exec form
    - COPY/ADD: copies from a --from= stage artifact or the build context
    - Metadata directives: applied with `docker commit --change`
    - Commits the container and returns the new image id
    """

    def __init__(self, context_dir: Optional[str] = None, shell: str = "/bin/sh", preserve_on_failure: bool = False):
        self.context_dir = context_dir or os.getcwd()
        self.shell = shell
        self.preserve_on_failure = preserve_on_failure
        self._containers: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._cancelled = threading.Event()

    def _docker(self, args: List[str], timeout: Optional[int] = None) -> subprocess.CompletedProcess:
        cmd = sudo_prefix() + ["docker"] + args
        return subprocess.run(cmd, text=True, capture_output=True, timeout=timeout)

    def _checked(self, instruction: Instruction, args: List[str]) -> str:
        result = self._docker(args)
        if result.returncode != 0:
            detail = (result.stderr or "").strip() or f"exit code {result.returncode}"
            raise ExecutionError("", -1, instruction.text, cause=f"docker {args[0]}: {detail}")
        return result.stdout.strip()

    def _container_name(self, keyword: str) -> str:
        suffix = uuid.uuid4().hex[:8]
        allowed = string.ascii_letters + string.digits
        safe = "".join(ch for ch in keyword.lower() if ch in allowed) or "layer"
        return f"stagecache_{safe}_{suffix}"

    def cancel(self):
        self._cancelled.set()
        with self._lock:
            containers = list(self._containers.values())
        for container in containers:
            self._docker(["kill", container])

    def execute(self, instruction: Instruction, base_artifact: str, sources: Optional[Dict[str, str]] = None) -> str:
        if self._cancelled.is_set():
            raise ExecutionError("", -1, instruction.text, cause="runtime cancelled")
        keyword = instruction.keyword.upper()
        changes: List[str] = [instruction.text] if keyword in COMMIT_CHANGE_KEYWORDS else []
        command = self._run_argv(instruction.args) if keyword == "RUN" else None

        name = self._container_name(keyword)
        container = self._checked(instruction, ["create", "--name", name, "--entrypoint", self.shell,
                                                base_artifact, "-c", "while sleep 3600; do :; done"])
        with self._lock:
            self._containers[name] = container
        failed = True
        try:
            if keyword in ("COPY", "ADD"):
                self._copy(instruction, container, sources or {})
            if command is not None:
                self._checked(instruction, ["start", container])
                logger.info(">>> Running in %s: %s", name, " ".join(command))
                self._checked(instruction, ["exec", container] + command)
                self._checked(instruction, ["stop", "-t", "1", container])
            commit_args = ["commit"]
            for change in self._restore_process_config(instruction, base_artifact, keyword) + changes:
                commit_args += ["--change", change]
            image_id = self._checked(instruction, commit_args + [container])
            failed = False
            return image_id
        finally:
            with self._lock:
                self._containers.pop(name, None)
            if not (failed and self.preserve_on_failure):
                self._docker(["rm", "-f", container])

    def _run_argv(self, args: str) -> List[str]:
        """docker exec argv for a RUN: exec form as given, shell form through the shell"""
        args = args.strip()
        if args.startswith("["):
            try:
                words = json.loads(args)
            except ValueError:
                words = None
            if isinstance(words, list) and words and all(isinstance(w, str) for w in words):
                return words
        return [self.shell, "-c", args]

    def _restore_process_config(self, instruction: Instruction, base_artifact: str, keyword: str) -> List[str]:
        """ENTRYPOINT/CMD of the base image; the idle container overrides both"""
        restore: List[str] = []
        for field in ("Entrypoint", "Cmd"):
            if keyword == field.upper():
                continue
            value = self._checked(instruction, ["image", "inspect", base_artifact,
                                                "--format", "{{json .Config.%s}}" % field])
            restore.append(f"{field.upper()} {value if value not in ('', 'null') else '[]'}")
        return restore

    def _copy(self, instruction: Instruction, container: str, sources: Dict[str, str]):
        words = split_copy_args(instruction.args)
        if len(words) < 2:
            raise ExecutionError("", -1, instruction.text, cause="COPY needs a source and a destination")
        srcs, dst = words[:-1], words[-1]
        if instruction.sources:
            self._copy_from_image(instruction, container, sources[instruction.sources[0]], srcs, dst)
            return
        context = os.path.abspath(self.context_dir)
        for src in srcs:
            src_abs = os.path.abspath(os.path.join(context, src))
            if os.path.commonpath([context, src_abs]) != context:
                raise ExecutionError("", -1, instruction.text, cause=f"{src} is outside the build context")
            self._checked(instruction, ["cp", src_abs, f"{container}:{dst}"])

    def _copy_from_image(self, instruction: Instruction, container: str, image: str, srcs: List[str], dst: str):
        """docker cp out of a temporary container of image, then into container"""
        helper = self._checked(instruction, ["create", image])
        staging = tempfile.mkdtemp(prefix="stagecache_copy_")
        try:
            for src in srcs:
                # Globs are expanded inside the source image
                listing = self._docker(["run", "--rm", "--entrypoint", self.shell, image, "-c",
                                        f"for f in {src}; do [ -e \"$f\" ] && echo \"$f\"; done"])
                paths = [p for p in listing.stdout.splitlines() if p.strip()] or [src]
                for path in paths:
                    local = os.path.join(staging, os.path.basename(path.rstrip("/")) or "root")
                    self._checked(instruction, ["cp", f"{helper}:{path}", local])
                    self._checked(instruction, ["cp", local, f"{container}:{dst}"])
        finally:
            self._docker(["rm", "-f", helper])
            shutil.rmtree(staging, ignore_errors=True)
