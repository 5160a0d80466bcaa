# opsconsole/modules/memory/services.py

import re
import zlib
from typing import Any, Dict, List, Optional

from loguru import logger

from opsconsole.core.clock import utcnow
from .models import EMBEDDING_BUCKETS, AgentMemoryInDB
from .repository import AgentMemoryRepository

_TOKEN_SPLIT_RE = re.compile(r"[^a-z0-9]+")


def tokens(text: str) -> List[str]:
    return [token for token in _TOKEN_SPLIT_RE.split(text.lower()) if len(token) >= 3]


def simple_embedding(text: str) -> List[float]:
    """Bag-of-tokens vector hashed into a fixed number of crc32 buckets."""
    vector = [0.0] * EMBEDDING_BUCKETS
    for token in tokens(text):
        vector[zlib.crc32(token.encode("utf-8")) % EMBEDDING_BUCKETS] += 1.0
    return vector


def lexical_similarity(a: str, b: str) -> float:
    """Jaccard overlap of the two token sets."""
    ta, tb = set(tokens(a)), set(tokens(b))
    if not ta or not tb:
        return 0.0
    return len(ta & tb) / len(ta | tb)


class AgentMemoryService:
    """Episodic memory of tool outcomes, recalled by lexical overlap."""

    def __init__(self, memory_repo: AgentMemoryRepository):
        self.memory_repo = memory_repo
        self.log = logger.bind(service="AgentMemoryService")

    async def store_episode(
        self,
        user_id: str,
        scope: str,
        memory_key: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AgentMemoryInDB:
        memory = AgentMemoryInDB(
            user_id=str(user_id),
            scope=scope,
            memory_key=memory_key,
            content=content,
            embedding=simple_embedding(content),
            metadata=metadata or {},
            last_accessed_at=utcnow(),
        )
        try:
            return await self.memory_repo.create(memory)
        except (ValueError, RuntimeError) as e:
            self.log.warning(f"Skipping memory store because persistence is unavailable: {e}")
            return memory

    async def retrieve_relevant(self, user_id: str, query: str, limit: int = 5) -> List[Dict[str, Any]]:
        if not query.strip():
            return []
        try:
            records = await self.memory_repo.recent_for_user(user_id, limit=100)
        except RuntimeError as e:
            self.log.warning(f"Skipping memory retrieval because persistence is unavailable: {e}")
            return []

        scored = sorted(
            (
                {
                    "id": memory.id,
                    "scope": memory.scope,
                    "memory_key": memory.memory_key,
                    "content": memory.content,
                    "metadata": memory.metadata,
                    "score": lexical_similarity(query, memory.content),
                }
                for memory in records
            ),
            key=lambda item: item["score"],
            reverse=True,
        )[:limit]

        try:
            await self.memory_repo.touch([item["id"] for item in scored], utcnow())
        except RuntimeError as e:
            self.log.warning(f"Could not update last_accessed_at on recalled memories: {e}")
        return scored
