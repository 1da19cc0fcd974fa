"""Chapter and document store interface with a local file implementation"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from novelctx.models import ChapterSummary, ChapterText

logger = logging.getLogger(__name__)


class ChapterStore(ABC):
    """Read access to written chapters, summaries and novel settings"""

    @abstractmethod
    async def get_recent_chapters(self, novel_id: str, before_chapter: int, limit: int) -> List[ChapterText]:
        """Up to `limit` full chapters preceding `before_chapter`, oldest first"""
        pass

    @abstractmethod
    async def get_summaries(self, novel_id: str, before_chapter: int, limit: int) -> List[ChapterSummary]:
        """Up to `limit` chapter summaries preceding `before_chapter`, oldest first"""
        pass

    @abstractmethod
    async def get_core_settings(self, novel_id: str) -> str:
        """Core settings text of a novel"""
        pass

    @abstractmethod
    async def get_volume_plan(self, novel_id: str, chapter_number: int) -> Dict[str, Any]:
        """Plan of the volume containing a chapter"""
        pass

    @abstractmethod
    async def get_chapter_plan(self, novel_id: str, chapter_number: int) -> Dict[str, Any]:
        """Plan of a single chapter"""
        pass


class LocalChapterStore(ChapterStore):
    """
    Local file-based chapter store.

    Layout::

        <storage_dir>/<novel_id>/novel.json          core_settings, volumes, chapter_plans
        <storage_dir>/<novel_id>/chapters/<n>.json   chapter_number, title, content, summary
    """

    def __init__(self, storage_dir: str = "./data/novels"):
        """
        Initialize local chapter storage

        Args:
            storage_dir: Directory holding one sub-directory per novel
        """
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

    def _novel_dir(self, novel_id: Any) -> Path:
        return self.storage_dir / str(novel_id)

    def _chapters_dir(self, novel_id: Any) -> Path:
        return self._novel_dir(novel_id) / "chapters"

    def _read_json(self, path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write_json(self, path: Path, data: Dict[str, Any]):
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

    def _chapter_records(self, novel_id: Any, before_chapter: int) -> List[Dict[str, Any]]:
        chapters_dir = self._chapters_dir(novel_id)
        if not chapters_dir.is_dir():
            return []

        records = []
        for file_path in chapters_dir.glob("*.json"):
            record = self._read_json(file_path)
            if record and record.get("chapter_number", 0) < before_chapter:
                records.append(record)
        records.sort(key=lambda r: r["chapter_number"])
        return records

    async def save_chapter(
        self,
        novel_id: Any,
        chapter_number: int,
        content: str,
        title: str = "",
        summary: str = ""
    ) -> bool:
        """Write a chapter file"""
        self._write_json(
            self._chapters_dir(novel_id) / f"{chapter_number}.json",
            {"chapter_number": chapter_number, "title": title, "content": content, "summary": summary}
        )
        return True

    async def save_novel(
        self,
        novel_id: Any,
        core_settings: str = "",
        volumes: Optional[List[Dict[str, Any]]] = None,
        chapter_plans: Optional[Dict[str, Dict[str, Any]]] = None
    ) -> bool:
        """Write the novel settings file"""
        self._write_json(
            self._novel_dir(novel_id) / "novel.json",
            {
                "core_settings": core_settings,
                "volumes": volumes or [],
                "chapter_plans": {str(k): v for k, v in (chapter_plans or {}).items()}
            }
        )
        return True

    async def get_recent_chapters(self, novel_id: str, before_chapter: int, limit: int) -> List[ChapterText]:
        if limit <= 0:
            return []
        records = self._chapter_records(novel_id, before_chapter)[-limit:]
        return [
            ChapterText(
                chapter_number=r["chapter_number"],
                title=r.get("title", ""),
                content=r.get("content", "")
            )
            for r in records
        ]

    async def get_summaries(self, novel_id: str, before_chapter: int, limit: int) -> List[ChapterSummary]:
        if limit <= 0:
            return []
        records = [r for r in self._chapter_records(novel_id, before_chapter) if r.get("summary")]
        return [
            ChapterSummary(chapter_number=r["chapter_number"], summary=r["summary"])
            for r in records[-limit:]
        ]

    async def get_core_settings(self, novel_id: str) -> str:
        novel = self._read_json(self._novel_dir(novel_id) / "novel.json") or {}
        return novel.get("core_settings", "")

    async def get_volume_plan(self, novel_id: str, chapter_number: int) -> Dict[str, Any]:
        novel = self._read_json(self._novel_dir(novel_id) / "novel.json") or {}
        for volume in novel.get("volumes", []):
            start = volume.get("start_chapter", 1)
            end = volume.get("end_chapter")
            if start <= chapter_number and (end is None or chapter_number <= end):
                return volume
        return {}

    async def get_chapter_plan(self, novel_id: str, chapter_number: int) -> Dict[str, Any]:
        novel = self._read_json(self._novel_dir(novel_id) / "novel.json") or {}
        return novel.get("chapter_plans", {}).get(str(chapter_number), {})
