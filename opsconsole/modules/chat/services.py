# opsconsole/modules/chat/services.py

import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from fastapi import Depends
from loguru import logger

from opsconsole.core.clock import resolve_timezone, utcnow
from opsconsole.core.config import settings
from opsconsole.core.database import get_database
from opsconsole.services.llm_client import OllamaClient, get_ollama_client
from opsconsole.services.planner import latest_user_message
from opsconsole.tools.runner import ToolRunner
from .models import ChatConversationInDB, ChatMessageInDB
from .repository import (
    ChatConversationRepository,
    ChatMessageRepository,
    get_chat_conversation_repository,
    get_chat_message_repository,
)
from .skills import SkillLoader

RECENT_MESSAGES = 20

TASK_INTENT_RE = re.compile(
    r"\b(task|background|later|schedule|scheduled|every|daily|weekly|monthly|cron|monitor|watch|alert me|"
    r"remind me|automatically|in \d+\s*(minute|minutes|hour|hours|day|days)|tomorrow|next week|end of day|"
    r"at \d{1,2}:\d{2})\b",
    re.IGNORECASE,
)

TASK_INTENT_DIRECTIVE = """## Active Task Intent
The latest user message indicates scheduling/background intent.
Current server datetime is {now} ({timezone}).
You must create a `create_task` tool call with a complete payload for this request unless required fields are genuinely missing.
If required fields are missing, ask one concise clarification question.
For `schedule_type=one_time`, `run_at` must be a future datetime in the requested timezone.
When the user gives a relative time (today, tonight, at 12:10am) resolve it against the current server datetime above.
If the implied time today has already passed, choose the next valid future occurrence (typically tomorrow) and state that assumption.
Do not ask the user for the current date/time because it is already provided above.
Never fabricate task IDs, counts, task history tables, or placeholder links.
Only mention links and task IDs returned by successful tool results."""


def has_task_intent(text: str) -> bool:
    return bool(text.strip()) and TASK_INTENT_RE.search(text) is not None


def build_system_prompt(
    messages: List[Dict[str, Any]],
    skill_loader: SkillLoader,
    now: Optional[datetime] = None,
) -> str:
    """Base prompt, skills section, matched skill and task directive, joined by blank lines."""
    latest = latest_user_message(messages)
    parts = [settings.OLLAMA_SYSTEM_PROMPT or "", settings.OLLAMA_SKILLS_SECTION or ""]

    skill = skill_loader.select(latest)
    if skill is not None:
        parts.append(f"## Active Skill: {skill['name']}\nDescription: {skill['description']}\n\n{skill['content']}")

    if has_task_intent(latest):
        timezone = resolve_timezone(settings.APP_TIMEZONE)
        current = (now or datetime.now(ZoneInfo(timezone))).astimezone(ZoneInfo(timezone))
        parts.append(TASK_INTENT_DIRECTIVE.format(now=current.isoformat(timespec="seconds"), timezone=timezone))

    return "\n\n".join(part.strip() for part in parts if part and part.strip())


def prepend_system_message(
    messages: List[Dict[str, Any]],
    skill_loader: SkillLoader,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    system_prompt = build_system_prompt(messages, skill_loader, now)
    if not system_prompt:
        return list(messages)
    return [{"role": "system", "content": system_prompt}, *messages]


class ChatMemory:
    """Per-user conversations and their message history."""

    def __init__(self, conversation_repo: ChatConversationRepository, message_repo: ChatMessageRepository):
        self.conversation_repo = conversation_repo
        self.message_repo = message_repo

    async def resolve_conversation(self, user_id: str, conversation_id: Optional[str] = None) -> ChatConversationInDB:
        if conversation_id:
            conversation = await self.conversation_repo.get_owned(conversation_id, user_id)
            if conversation is not None:
                return conversation
        existing = await self.conversation_repo.latest_for_user(user_id)
        if existing is not None:
            return existing
        conversation = await self.conversation_repo.create(ChatConversationInDB(user_id=str(user_id)))
        logger.bind(service="ChatMemory", user_id=user_id).info(f"Started conversation {conversation.id}.")
        return conversation

    async def recent_messages(self, conversation: ChatConversationInDB, limit: int = RECENT_MESSAGES) -> List[Dict[str, str]]:
        """Chronological ``{role, content}`` pairs of the last ``limit`` messages."""
        latest = await self.message_repo.latest_for_conversation(conversation.id, max(1, limit))
        return [{"role": message.role, "content": message.content} for message in reversed(latest)]

    async def persist_exchange(
        self,
        conversation: ChatConversationInDB,
        user_message: str,
        assistant_message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.message_repo.create(
            ChatMessageInDB(conversation_id=conversation.id, role="user", content=user_message)
        )
        if assistant_message.strip():
            await self.message_repo.create(
                ChatMessageInDB(
                    conversation_id=conversation.id,
                    role="assistant",
                    content=assistant_message,
                    metadata=metadata or None,
                )
            )
        await self.conversation_repo.update(conversation.id, {"last_activity_at": utcnow()})


async def get_chat_memory(
    conversation_repo: ChatConversationRepository = Depends(get_chat_conversation_repository),
    message_repo: ChatMessageRepository = Depends(get_chat_message_repository),
) -> ChatMemory:
    return ChatMemory(conversation_repo, message_repo)


def get_skill_loader() -> SkillLoader:
    return SkillLoader()


RunnerFactory = Callable[[str, str], ToolRunner]


async def get_tool_runner_factory(
    db=Depends(get_database),
    llm: OllamaClient = Depends(get_ollama_client),
) -> RunnerFactory:
    def build(user_id: str, trace_id: str) -> ToolRunner:
        return ToolRunner(db, user_id, model=llm.model, trace_id=trace_id, llm=llm)

    return build
