"""Analysis result persistence, one directory per source."""
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from schemas.archive import PageAnalysisArchive
from schemas.homework import AnalysisReport

logger = logging.getLogger(__name__)

SOURCE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


@dataclass
class ArchiveStore:
    """
    Single-writer store where the last saved result wins.

    Directory structure:
        {store_dir}/{source_id}/
            analysis.json   (AnalysisReport for a single-page source)
            archive.json    (PageAnalysisArchive for a multi-page source)

    The pipeline only writes here after a run completes; it never reads
    back its own output mid-run.
    """
    store_dir: Path

    def __post_init__(self):
        self.store_dir = Path(self.store_dir)

    def get_source_dir(self, source_id: str) -> Path:
        """Get the directory for a source, validating the identifier."""
        if not SOURCE_ID_PATTERN.match(source_id):
            raise ValueError(f"Invalid source id: {source_id!r}")
        return self.store_dir / source_id

    def _write(self, path: Path, payload: str) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(payload)
        tmp_path.replace(path)
        logger.debug(f"Wrote {path}")
        return path

    def save_report(self, source_id: str, report: AnalysisReport) -> Path:
        """Replace the stored analysis of a single-page source."""
        path = self.get_source_dir(source_id) / "analysis.json"
        return self._write(path, report.model_dump_json(by_alias=True, indent=2))

    def load_report(self, source_id: str) -> Optional[AnalysisReport]:
        path = self.get_source_dir(source_id) / "analysis.json"
        if not path.exists():
            return None
        return AnalysisReport.model_validate_json(path.read_text())

    def save_archive(self, archive: PageAnalysisArchive, source_id: Optional[str] = None) -> Path:
        """Replace the stored page archive of a multi-page source."""
        source_id = source_id or archive.source_id
        if not source_id:
            raise ValueError("Archive has no source id")
        path = self.get_source_dir(source_id) / "archive.json"
        return self._write(path, archive.model_dump_json(by_alias=True, indent=2))

    def load_archive(self, source_id: str) -> Optional[PageAnalysisArchive]:
        path = self.get_source_dir(source_id) / "archive.json"
        if not path.exists():
            return None
        return PageAnalysisArchive.model_validate_json(path.read_text())

    def list_sources(self) -> List[str]:
        """Source ids with at least one stored result, sorted."""
        if not self.store_dir.exists():
            return []
        return sorted(
            item.name for item in self.store_dir.iterdir()
            if item.is_dir() and any((item / name).exists() for name in ("analysis.json", "archive.json"))
        )
