import json
import logging
import threading
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import ArtifactValidationError
from .schemas import Artifact, RunManifest


logger = logging.getLogger("deepresearch.artifact_store")

ARTIFACTS_FILE = "artifacts.jsonl"
REPORT_FILE = "final_report.md"
MANIFEST_FILE = "manifest.json"


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def _json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except ValueError:
        return default


class ArtifactStore:
    """Append-only JSON Lines log of one run's artifacts.

    There is no in-memory index: every read re-scans the whole file, so each
    query is O(n) in the number of stored artifacts.
    """

    def __init__(self, run_id: str, base_path: str = "./cache/deep_research"):
        self.run_id = run_id
        self.base_path = Path(base_path)
        self.storage_path = self.base_path / run_id
        self.artifacts_file = self.storage_path / ARTIFACTS_FILE
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def store(self, artifact: Artifact) -> Artifact:
        if not isinstance(artifact, Artifact):
            raise ArtifactValidationError("Invalid artifact")
        if not artifact.is_valid():
            raise ArtifactValidationError(f"Artifact validation failed: unknown type {artifact.type!r}")
        line = _json_dumps(artifact.model_dump(mode="json"))
        with self._lock:
            with self.artifacts_file.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        return artifact

    def put(self, artifact_type: str, data: Dict[str, Any]) -> Artifact:
        return self.store(Artifact(type=artifact_type, data=data))

    def load_all(self) -> List[Artifact]:
        if not self.artifacts_file.exists():
            return []
        artifacts: List[Artifact] = []
        with self.artifacts_file.open("r", encoding="utf-8") as handle:
            for lineno, line in enumerate(handle, start=1):
                raw = line.strip()
                if not raw:
                    continue
                payload = _json_loads(raw, None)
                if not isinstance(payload, dict):
                    logger.warning("Skipping unreadable artifact line %s in %s", lineno, self.artifacts_file)
                    continue
                artifacts.append(Artifact.model_validate(payload))
        return artifacts

    def load_by_type(self, artifact_type: str) -> List[Artifact]:
        return [artifact for artifact in self.load_all() if artifact.type == artifact_type]

    def query(self, artifact_type: str, **criteria: Any) -> List[Artifact]:
        return [
            artifact
            for artifact in self.load_by_type(artifact_type)
            if all(artifact.data.get(key) == value for key, value in criteria.items())
        ]

    def count_by_type(self, artifact_type: str) -> int:
        return len(self.load_by_type(artifact_type))

    def unique_sources(self) -> List[str]:
        """Source URLs of every stored fact, first-seen order, no duplicates."""
        seen: Dict[str, None] = {}
        for artifact in self.load_by_type("fact"):
            for url in artifact.data.get("source_urls") or []:
                if url:
                    seen.setdefault(url, None)
        return list(seen)

    def clear(self) -> None:
        self.artifacts_file.unlink(missing_ok=True)

    def stats(self) -> Dict[str, Any]:
        artifacts = self.load_all()
        return {
            "total_artifacts": len(artifacts),
            "by_type": dict(Counter(artifact.type for artifact in artifacts)),
            "storage_path": str(self.storage_path),
            "file_size": self.artifacts_file.stat().st_size if self.artifacts_file.exists() else 0,
        }

    def save_report(self, report: str) -> Path:
        path = self.storage_path / REPORT_FILE
        path.write_text(report, encoding="utf-8")
        return path

    def save_manifest(self, manifest: RunManifest) -> Path:
        path = self.storage_path / MANIFEST_FILE
        path.write_text(manifest.model_dump_json(indent=2), encoding="utf-8")
        return path
