"""Canned-response backend.

Always available, so it is the last-resort default and the target named
in failure notices. Picks a reply by keyword from the newest user turn and
emits it word by word with a short random delay.
"""
from __future__ import annotations

import asyncio
import random
from typing import Any

from ..errors import ProtocolError
from .base import BackendAdapter, BackendStatus

MIN_WORD_DELAY = 0.03
MAX_WORD_DELAY = 0.10

MOCK_RESPONSES: dict[str, str] = {
    "debug": (
        "I'd be happy to help debug that error! Here's a systematic approach:\n\n"
        "```python\n"
        "# 1. Read the full traceback, bottom line first\n"
        "# 2. Reproduce with the smallest possible input\n"
        "# 3. Check the types of the values involved\n"
        "value: str = 42  # wrong\n"
        "value: str = \"42\"  # fixed\n"
        "```\n\n"
        "Could you share the exact error message you're seeing?"
    ),
    "async": (
        "Great question! `async`/`await` lets you write asynchronous code that reads "
        "like synchronous code:\n\n"
        "```python\n"
        "async def get_user_posts(user_id):\n"
        "    user = await fetch_user(user_id)\n"
        "    return await fetch_posts(user.id)\n"
        "```\n\n"
        "**Key concepts:**\n"
        "- `async def` makes a function return a coroutine\n"
        "- `await` suspends until the awaited result is ready\n"
        "- The event loop runs other tasks while one is waiting"
    ),
    "component": (
        "Here's a small React component with TypeScript:\n\n"
        "```tsx\n"
        "interface UserCardProps {\n"
        "  name: string;\n"
        "  role: string;\n"
        "}\n\n"
        "export function UserCard({ name, role }: UserCardProps) {\n"
        "  return (\n"
        "    <div className=\"rounded-lg p-6\">\n"
        "      <h3>{name}</h3>\n"
        "      <p>{role}</p>\n"
        "    </div>\n"
        "  );\n"
        "}\n"
        "```"
    ),
    "review": (
        "I'll review your code for best practices. Key areas I look for:\n\n"
        "1. Descriptive naming\n"
        "2. Single responsibility per function\n"
        "3. Early returns instead of deep nesting\n"
        "4. Type annotations at module boundaries\n\n"
        "Share your code and I'll provide specific feedback!"
    ),
    "default": (
        "I'm here to help! I can assist with:\n\n"
        "**Debugging** - Fix errors and issues in your code\n"
        "**Learning** - Explain concepts and best practices\n"
        "**Coding** - Generate components and functions\n"
        "**Review** - Analyze code quality\n\n"
        "Note: This is a mock response. Configure a real AI backend to get actual "
        "AI assistance.\n\n"
        "What would you like to work on?"
    ),
}

# First match wins.
KEYWORD_TABLE: list[tuple[tuple[str, ...], str]] = [
    (("debug", "error"), "debug"),
    (("async", "await"), "async"),
    (("component", "react"), "component"),
    (("review", "best practice"), "review"),
]


def response_for_prompt(prompt: str) -> str:
    lowered = prompt.lower()
    for keywords, key in KEYWORD_TABLE:
        if any(k in lowered for k in keywords):
            return MOCK_RESPONSES[key]
    return MOCK_RESPONSES["default"]


class MockBackend(BackendAdapter):
    def __init__(
        self,
        *,
        min_delay: float = MIN_WORD_DELAY,
        max_delay: float = MAX_WORD_DELAY,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._min_delay = min_delay
        self._max_delay = max_delay

    @property
    def name(self) -> str:
        return "mock"

    def is_available(self) -> bool:
        return True

    async def probe(self) -> BackendStatus:
        return BackendStatus(self.name, True)

    def list_models(self) -> list[dict[str, Any]]:
        return [{
            "id": "mock",
            "name": "Mock AI (Demo)",
            "backend": "mock",
            "description": "Simulated responses for testing",
        }]

    async def _generate(self, context, settings, cwd, stream, key, continuation_id):
        prompt = context.last_user_content
        if not prompt.strip():
            raise ProtocolError(self.name, "no user message found")
        stream.model_version = "mock"
        writer = self._capture.open(key, backend=self.name) if self._capture and key else None
        try:
            for i, word in enumerate(response_for_prompt(prompt).split(" ")):
                piece = word if i == 0 else " " + word
                if writer is not None:
                    writer.write(piece.encode("utf-8"))
                yield piece
                if self._max_delay > 0:
                    await asyncio.sleep(random.uniform(self._min_delay, self._max_delay))
        finally:
            if writer is not None:
                writer.close()
