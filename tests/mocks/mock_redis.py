"""
In-memory stand-in for the subset of redis.asyncio used by the job orchestrator.
"""
import asyncio
import json
from collections import defaultdict
from typing import Dict, List, Optional


class MockRedis:
    """Async Redis double backed by dicts and lists."""

    def __init__(self):
        self.strings: Dict[str, str] = {}
        self.expiry: Dict[str, Optional[int]] = {}
        self.lists: Dict[str, List[str]] = defaultdict(list)
        self.zsets: Dict[str, Dict[str, float]] = defaultdict(dict)
        self.closed = False

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.strings:
            return None
        self.strings[key] = value
        self.expiry[key] = ex
        return True

    async def get(self, key):
        return self.strings.get(key)

    async def lpush(self, key, *values):
        for value in values:
            self.lists[key].insert(0, value)
        return len(self.lists[key])

    async def rpush(self, key, *values):
        self.lists[key].extend(values)
        return len(self.lists[key])

    async def brpop(self, key, timeout=0):
        if self.lists.get(key):
            return key, self.lists[key].pop()
        # Yield briefly instead of blocking for the full timeout
        await asyncio.sleep(0.005)
        return None

    async def llen(self, key):
        return len(self.lists.get(key, []))

    async def lrange(self, key, start, end):
        items = self.lists.get(key, [])
        return items[start:] if end == -1 else items[start:end + 1]

    async def zadd(self, key, mapping):
        self.zsets[key].update(mapping)
        return len(mapping)

    async def zrangebyscore(self, key, min_score, max_score):
        members = sorted(self.zsets.get(key, {}).items(), key=lambda item: item[1])
        return [member for member, score in members if min_score <= score <= max_score]

    async def zrem(self, key, *members):
        removed = 0
        for member in members:
            if self.zsets.get(key, {}).pop(member, None) is not None:
                removed += 1
        return removed

    async def zcard(self, key):
        return len(self.zsets.get(key, {}))

    async def aclose(self):
        self.closed = True

    def queued_jobs(self, kind: str, prefix: str = "monitor") -> List[dict]:
        """Decoded jobs waiting on a kind's ready list, oldest first."""
        return [json.loads(raw) for raw in reversed(self.lists.get(f"{prefix}:{kind}:queue", []))]
