# opsconsole/modules/catalog/services.py

import inspect
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from opsconsole.core.config import settings
from opsconsole.modules.chat.skills import SKILL_FILENAME
from opsconsole.tools.registry import TOOL_SPECS, ToolSpec

CATEGORY_ICONS = {
    "reporting": "chart",
    "messaging": "message",
    "mutation": "edit",
    "query": "search",
    "platform": "wrench",
}

FLOW = [
    "Accepts request arguments",
    "Validates incoming fields",
    "Executes tool-specific business logic",
    "Returns structured result payload",
]

METHOD_INTENTS = (
    (("schema",), "Defines expected input fields and types."),
    (("handle", "run", "execute"), "Main execution entrypoint for the tool request."),
    (("parse", "normalize"), "Normalizes raw values into safer formats."),
    (("build",), "Builds derived structures used by responses."),
    (("infer",), "Infers context-specific behavior from inputs."),
    (("resolve",), "Resolves internal references or dependencies."),
    (("create",), "Creates new records or generated artifacts."),
    (("update", "edit"), "Updates existing data or state."),
    (("list", "get"), "Fetches and formats data for output."),
)


class InvalidSkillPath(ValueError):
    pass


def _iso_mtime(path: Path) -> Optional[str]:
    try:
        return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc).isoformat()
    except OSError:
        return None


def _title(key: str) -> str:
    return key.rsplit("/", 1)[-1].replace("-", " ").replace("_", " ").title()


class SkillCatalog:
    """Lists and edits the SKILL.md files under the skills root."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or settings.OLLAMA_SKILLS_PATH)

    def list(self) -> List[Dict[str, Any]]:
        if not self.root.is_dir():
            return []
        skills = []
        for path in self.root.rglob(SKILL_FILENAME):
            relative = path.relative_to(self.root).as_posix()
            key = relative[: -len(f"/{SKILL_FILENAME}")] if "/" in relative else ""
            skills.append({
                "key": key,
                "label": _title(key),
                "path": relative,
                "content": path.read_text(encoding="utf-8"),
                "updated_at": _iso_mtime(path),
            })
        return sorted(skills, key=lambda skill: skill["label"])

    def resolve(self, key: str) -> Path:
        """SKILL.md path for ``key``; raises InvalidSkillPath when it escapes the root or does not exist."""
        normalized = key.replace("\\", "/").strip("/")
        if not normalized or ".." in normalized or not self.root.is_dir():
            raise InvalidSkillPath("Invalid skill path.")
        real_root = self.root.resolve()
        candidate = (self.root / normalized).resolve()
        if candidate != real_root and real_root not in candidate.parents:
            raise InvalidSkillPath("Invalid skill path.")
        skill_file = candidate / SKILL_FILENAME
        if not skill_file.is_file():
            raise InvalidSkillPath("Invalid skill path.")
        return skill_file

    def update(self, key: str, content: str) -> Path:
        path = self.resolve(key)
        path.write_text(content, encoding="utf-8")
        logger.bind(service="SkillCatalog").info(f"Skill '{key}' updated ({len(content)} chars).")
        return path


def infer_category(name: str, description: str) -> str:
    text = f"{name} {description}".lower()
    if "report" in text:
        return "reporting"
    if any(word in text for word in ("send", "email", "whatsapp")):
        return "messaging"
    if any(word in text for word in ("create", "edit", "update", "mutation")):
        return "mutation"
    if any(word in text for word in ("get", "list", "query")):
        return "query"
    if any(word in text for word in ("scaffold", "schema", "workspace")):
        return "platform"
    return "general"


def infer_risk(name: str) -> str:
    lowered = name.lower()
    if any(word in lowered for word in ("send", "create", "edit", "update")):
        return "high"
    if any(word in lowered for word in ("scaffold", "schema", "workspace")):
        return "medium"
    return "low"


def method_intent(name: str) -> str:
    lowered = name.lower()
    for prefixes, intent in METHOD_INTENTS:
        if lowered.startswith(prefixes):
            return intent
    return "Supports internal tool execution flow."


def _capabilities(source: str) -> List[str]:
    lowered = source.lower()
    capabilities = []
    if "validate" in lowered or "errors" in lowered:
        capabilities.append("Input validation")
    if "repo" in lowered or "query" in lowered:
        capabilities.append("Database querying")
    if '"type":' in lowered:
        capabilities.append("Structured tool responses")
    if "path(" in lowered or "open(" in lowered:
        capabilities.append("Filesystem operations")
    if "httpx" in lowered or "sender" in lowered or "client" in lowered:
        capabilities.append("External API calls")
    return capabilities or ["Business workflow orchestration"]


def explain_tool(spec: ToolSpec) -> Dict[str, Any]:
    """Catalog entry for a registered tool, described from its owner class source."""
    owner = spec.owner
    handler = getattr(owner, spec.method)
    handler_source = inspect.getsource(handler)
    methods = [
        {
            "name": name,
            "visibility": "private" if name.startswith("_") else "public",
            "intent": method_intent(name.lstrip("_")),
        }
        for name, member in inspect.getmembers(owner, inspect.isfunction)
        if member.__qualname__.startswith(f"{owner.__name__}.") and not name.startswith("__")
    ]
    category = infer_category(spec.name, spec.description)
    source_file = inspect.getsourcefile(owner)
    return {
        "key": spec.name,
        "label": _title(spec.name),
        "path": owner.__module__.replace(".", "/") + ".py",
        "class_name": owner.__name__,
        "method": spec.method,
        "description": spec.description,
        "category": category,
        "icon_key": CATEGORY_ICONS.get(category, "box"),
        "risk_level": infer_risk(spec.name),
        "method_count": len(methods),
        "line_count": len(handler_source.splitlines()),
        "source_explained": {
            "summary": spec.description.strip()
            or f"This tool coordinates {owner.__name__} operations with structured request/response handling.",
            "capabilities": _capabilities(handler_source),
            "flow": FLOW,
            "methods": methods,
        },
        "updated_at": _iso_mtime(Path(source_file)) if source_file else None,
    }


def tool_catalog() -> List[Dict[str, Any]]:
    return sorted((explain_tool(spec) for spec in TOOL_SPECS), key=lambda tool: tool["label"])


def get_skill_catalog() -> SkillCatalog:
    return SkillCatalog()
