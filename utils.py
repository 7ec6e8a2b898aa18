import functools
import os
import shutil
import subprocess
from typing import List


def _can_run(cmd: List[str]) -> bool:
    try:
        r = subprocess.run(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, timeout=3)
        return r.returncode == 0
    except (OSError, subprocess.TimeoutExpired):
        return False


@functools.lru_cache(maxsize=1)
def _detect_sudo() -> tuple:
    try:
        if os.geteuid() == 0:
            return ()
    except AttributeError:
        # No geteuid on this platform
        pass

    if shutil.which("docker") and _can_run(["docker", "info"]):
        return ()

    if shutil.which("sudo") and _can_run(["sudo", "-n", "true"]):
        return ("sudo", "-n", "-E")

    # Callers will surface the Docker permission error
    return ()


def sudo_prefix() -> List[str]:
    """Command prefix needed to talk to the Docker daemon.

    - STAGECACHE_NO_SUDO=1 disables sudo entirely.
    - Root, or a user that can already reach the daemon, needs no prefix.
    - Otherwise non-interactive `sudo -n -E` when available.

    Detection runs once per process.
    """
    if os.environ.get("STAGECACHE_NO_SUDO", "").strip() in ("1", "true", "True"):
        return []
    return list(_detect_sudo())


def docker_available() -> bool:
    """Whether the Docker daemon answers, directly or through sudo"""
    if not shutil.which("docker"):
        return False
    return _can_run(sudo_prefix() + ["docker", "info"])
