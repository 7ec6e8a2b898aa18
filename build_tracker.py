import json
import os
from datetime import datetime
from typing import Dict, List, Optional

from config import BuildReport


class BuildTracker:
    """Persists per-stage verdict reports of past builds.

    Timestamps only ever live here, never in fingerprints.
    """

    def __init__(self, history_file: str = ".stagecache_history.json"):
        self.history_file = history_file
        self.build_history = self._load_history()

    def _load_history(self) -> Dict:
        """Load build history from history file"""
        if os.path.exists(self.history_file):
            try:
                with open(self.history_file, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                if isinstance(data, dict) and isinstance(data.get("builds"), list):
                    return data
            except (json.JSONDecodeError, IOError):
                pass
        return {"builds": []}

    def _save_history(self):
        with open(self.history_file, 'w', encoding='utf-8') as f:
            json.dump(self.build_history, f, indent=2)

    def record_build(self, report: BuildReport):
        """Record a build, successful or not"""
        record = report.to_dict()
        record["timestamp"] = datetime.now().isoformat()
        record["succeeded"] = report.succeeded
        self.build_history["builds"].append(record)
        self._save_history()

    def builds(self) -> List[Dict]:
        return list(self.build_history["builds"])

    def last_build(self) -> Optional[Dict]:
        builds = self.build_history["builds"]
        return builds[-1] if builds else None

    def get_stage_stats(self, recent_builds: int = 10) -> Dict[str, Dict[str, float]]:
        """Cached/built instruction counts per stage over recent builds"""
        stats: Dict[str, Dict[str, float]] = {}
        for build in self.build_history["builds"][-recent_builds:]:
            for stage_name, stage in build.get("stages", {}).items():
                entry = stats.setdefault(stage_name, {"builds": 0, "cached": 0, "built": 0})
                entry["builds"] += 1
                for item in stage.get("instructions", []):
                    if item.get("verdict") == "cached":
                        entry["cached"] += 1
                    else:
                        entry["built"] += 1
        for entry in stats.values():
            total = entry["cached"] + entry["built"]
            entry["efficiency"] = entry["cached"] / total if total else 0.0
        return stats

    def cleanup_old_builds(self, keep_last: int = 10) -> int:
        """Drop all but the last keep_last builds; returns how many were removed"""
        builds = self.build_history["builds"]
        if keep_last < 0 or len(builds) <= keep_last:
            return 0
        removed = len(builds) - keep_last
        self.build_history["builds"] = builds[-keep_last:] if keep_last else []
        self._save_history()
        return removed
