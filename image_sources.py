import base64
import json
import logging
import os
import re
import subprocess
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

from config import IMAGE_LABEL_HISTORY_B64, IMAGE_LABEL_VERSION, LayerRecord
from errors import RegistrationError
from utils import sudo_prefix

logger = logging.getLogger(__name__)


def _history_to_json(history: Sequence[LayerRecord]) -> List[Dict[str, str]]:
    return [record.to_dict() for record in history]


def _history_from_json(reference: str, items) -> List[LayerRecord]:
    if not isinstance(items, list):
        raise RegistrationError(reference, "history is not a list")
    records: List[LayerRecord] = []
    for item in items:
        try:
            records.append(LayerRecord(str(item["fingerprint"]), str(item["artifact"]),
                                       str(item.get("stage", "")), origin=reference))
        except (KeyError, TypeError) as e:
            raise RegistrationError(reference, f"malformed history entry: {e}") from e
    return records


class ImageSource(ABC):
    """Registry-side collaborator: reads and writes fingerprint histories of images"""

    @abstractmethod
    def fetch_history(self, reference: str) -> List[LayerRecord]:
        """Ordered (fingerprint -> layer) history of an image. Raises RegistrationError"""
        pass

    @abstractmethod
    def publish(self, reference: str, artifact: str, history: Sequence[LayerRecord]):
        """Make artifact available as reference, carrying its history"""
        pass

    def identity(self, reference: str) -> Optional[str]:
        """Content identity of an image, or None when unknown"""
        try:
            history = self.fetch_history(reference)
        except RegistrationError:
            return None
        return history[-1].fingerprint if history else None


class MemoryImageSource(ImageSource):
    """In-process image source; histories live in a dict"""

    def __init__(self):
        self.images: Dict[str, Dict] = {}
        self._lock = threading.Lock()

    def fetch_history(self, reference: str) -> List[LayerRecord]:
        with self._lock:
            image = self.images.get(reference)
        if image is None:
            raise RegistrationError(reference, "image not found")
        return _history_from_json(reference, image["history"])

    def publish(self, reference: str, artifact: str, history: Sequence[LayerRecord]):
        with self._lock:
            self.images[reference] = {"artifact": artifact, "history": _history_to_json(history)}


class LocalImageStore(ImageSource):
    """Image manifests stored as one JSON file per reference in a directory"""

    def __init__(self, store_dir: str):
        self.store_dir = store_dir
        os.makedirs(store_dir, exist_ok=True)

    def _get_path(self, reference: str) -> str:
        safe = re.sub(r"[^A-Za-z0-9._-]", "_", reference)
        return os.path.join(self.store_dir, f"{safe}.json")

    def exists(self, reference: str) -> bool:
        return os.path.exists(self._get_path(reference))

    def fetch_history(self, reference: str) -> List[LayerRecord]:
        path = self._get_path(reference)
        if not os.path.exists(path):
            raise RegistrationError(reference, "image not found in local store")
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise RegistrationError(reference, e) from e
        if not isinstance(data, dict):
            raise RegistrationError(reference, "manifest is not a mapping")
        return _history_from_json(reference, data.get("history"))

    def publish(self, reference: str, artifact: str, history: Sequence[LayerRecord]):
        manifest = {
            "reference": reference,
            "artifact": artifact,
            "history": _history_to_json(history),
        }
        path = self._get_path(reference)
        tmp_path = path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(manifest, f, indent=2)
        os.replace(tmp_path, path)

    def delete(self, reference: str) -> bool:
        path = self._get_path(reference)
        if os.path.exists(path):
            os.remove(path)
            return True
        return False


class DockerImageSource(ImageSource):
    """Histories carried as image labels on images known to the Docker daemon.

    Label strategy:
      - LABEL io.stagecache.history_b64 = base64(JSON array of records)
      - LABEL io.stagecache.version = "1"
    """

    def __init__(self, pull: bool = False, timeout: int = 30):
        self.pull = pull
        self.timeout = timeout

    def _docker(self, args: List[str], input_text: Optional[str] = None) -> subprocess.CompletedProcess:
        cmd = sudo_prefix() + ["docker"] + args
        return subprocess.run(cmd, input=input_text, capture_output=True, text=True, timeout=self.timeout)

    def _inspect(self, reference: str, fmt: str) -> Optional[str]:
        try:
            result = self._docker(["image", "inspect", reference, "--format", fmt])
            if result.returncode != 0 and self.pull:
                pulled = self._docker(["pull", reference])
                if pulled.returncode == 0:
                    result = self._docker(["image", "inspect", reference, "--format", fmt])
        except (OSError, subprocess.TimeoutExpired) as e:
            raise RegistrationError(reference, e) from e
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def fetch_history(self, reference: str) -> List[LayerRecord]:
        raw = self._inspect(reference, "{{json .Config.Labels}}")
        if raw is None:
            raise RegistrationError(reference, "image not found")
        try:
            labels = json.loads(raw or "null")
        except json.JSONDecodeError as e:
            raise RegistrationError(reference, e) from e
        if not isinstance(labels, dict) or not labels.get(IMAGE_LABEL_HISTORY_B64):
            raise RegistrationError(reference, "image carries no stagecache history")
        try:
            items = json.loads(base64.b64decode(labels[IMAGE_LABEL_HISTORY_B64]).decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            raise RegistrationError(reference, f"undecodable history label: {e}") from e
        return _history_from_json(reference, items)

    def identity(self, reference: str) -> Optional[str]:
        identity = super().identity(reference)
        if identity:
            return identity
        try:
            image_id = self._inspect(reference, "{{.Id}}")
        except RegistrationError:
            return None
        return image_id or None

    def publish(self, reference: str, artifact: str, history: Sequence[LayerRecord]):
        payload = json.dumps(_history_to_json(history), separators=(",", ":"))
        payload_b64 = base64.b64encode(payload.encode("utf-8")).decode("ascii")
        args = [
            "build", "-q", "-t", reference,
            "--label", f"{IMAGE_LABEL_VERSION}=1",
            "--label", f"{IMAGE_LABEL_HISTORY_B64}={payload_b64}",
            "-",
        ]
        result = self._docker(args, input_text=f"FROM {artifact}\n")
        if result.returncode != 0:
            raise RuntimeError(f"docker build (publish {reference}) failed: {result.stderr.strip()}")
        logger.debug("Published %s from %s", reference, artifact)
