# opsconsole/modules/chat/skills.py

import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from opsconsole.core.config import settings

SKILL_FILENAME = "SKILL.md"
DESCRIPTION_STOPWORDS = {"with", "that", "from", "this", "using", "tool", "tools"}

_FRONT_MATTER_RE = re.compile(r"^---\r?\n(.*?)\r?\n---\r?\n(.*)$", re.DOTALL)
_TOKEN_SPLIT_RE = re.compile(r"[^a-z0-9]+")


def parse_skill(raw: str) -> Tuple[Dict[str, str], str]:
    """Splits ``---`` front matter (``key: value`` lines) from the markdown body."""
    match = _FRONT_MATTER_RE.match(raw)
    if not match:
        return {}, raw
    meta: Dict[str, str] = {}
    for line in match.group(1).strip().splitlines():
        line = line.strip()
        if not line or line.startswith("#") or ":" not in line:
            continue
        key, value = line.split(":", 1)
        key = key.strip()
        if key:
            meta[key] = value.strip().strip("\"' \t")
    return meta, match.group(2)


def score_skill(skill: Dict[str, Any], query: str) -> int:
    score = 0
    name = skill["name"].lower()
    if f"${name}" in query or name in query:
        score += 100
    score += 15 * sum(1 for trigger in skill["triggers"] if trigger and trigger in query)
    for token in _TOKEN_SPLIT_RE.split(skill["description"].lower()):
        if len(token) >= 4 and token not in DESCRIPTION_STOPWORDS and token in query:
            score += 2
    return score


class SkillLoader:
    """Loads SKILL.md prompt skills and picks the one matching the latest user message."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or settings.OLLAMA_SKILLS_PATH)

    def load(self) -> List[Dict[str, Any]]:
        if not self.root.is_dir():
            return []
        skills = []
        for path in sorted(self.root.rglob(SKILL_FILENAME)):
            try:
                raw = path.read_text(encoding="utf-8")
            except OSError as e:
                logger.warning(f"Could not read skill file {path}: {e}")
                continue
            meta, content = parse_skill(raw)
            name = meta.get("name", "").strip()
            description = meta.get("description", "").strip()
            if not name or not description or not content.strip():
                continue
            triggers = [t.strip().lower() for t in meta.get("triggers", "").split(",") if t.strip()]
            skills.append({
                "name": name,
                "description": description,
                "triggers": triggers,
                "content": content.strip(),
                "path": str(path),
            })
        return skills

    def select(self, latest_user_text: str) -> Optional[Dict[str, Any]]:
        if not latest_user_text.strip():
            return None
        query = latest_user_text.lower()
        best, best_score = None, 0
        for skill in self.load():
            score = score_skill(skill, query)
            if score > best_score:
                best, best_score = skill, score
        return best
