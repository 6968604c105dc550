"""Raw passthrough backends: Gemini CLI and ``codex exec``.

Both CLIs take the whole conversation as one prompt argument and print
plain text to stdout. Output is decoded incrementally and relayed
verbatim; nothing is parsed.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..context import render_prompt
from ..errors import ProtocolError
from .base import CliBackend, TokenStream

if TYPE_CHECKING:
    from ..context import BackendContext
    from ..settings import ChatSettings

logger = logging.getLogger(__name__)

CODEX_DEFAULT_MODEL = "gpt-5"
CODEX_DEFAULT_REASONING_EFFORT = "high"
CODEX_DEFAULT_SANDBOX = "read-only"


def build_gemini_args(settings: ChatSettings) -> list[str]:
    gemini = settings.gemini
    args: list[str] = []
    if gemini.model:
        args.extend(["--model", gemini.model])
    if gemini.temperature is not None:
        args.extend(["--temperature", str(gemini.temperature)])
    if gemini.max_output_tokens is not None:
        args.extend(["--max-output-tokens", str(gemini.max_output_tokens)])
    if gemini.system_instruction:
        args.extend(["--system-instruction", gemini.system_instruction])
    if gemini.harm_block_threshold:
        args.extend(["--harm-block-threshold", gemini.harm_block_threshold])
    return args


def build_codex_exec_args(settings: ChatSettings) -> list[str]:
    codex = settings.codex
    args = [
        "-m", codex.model or CODEX_DEFAULT_MODEL,
        "-c", f'model_reasoning_effort="{codex.reasoning_effort or CODEX_DEFAULT_REASONING_EFFORT}"',
        "--sandbox", codex.sandbox or CODEX_DEFAULT_SANDBOX,
    ]
    if codex.approval_mode:
        args.extend(["--approval-mode", codex.approval_mode])
    if codex.max_tokens is not None:
        args.extend(["--max-tokens", str(codex.max_tokens)])
    return args


class GeminiBackend(CliBackend):
    """Gemini CLI, one ``gemini -p <prompt>`` process per turn."""

    def __init__(self, command: str = "gemini", **kwargs: Any) -> None:
        super().__init__(command, **kwargs)

    @property
    def name(self) -> str:
        return "gemini"

    def list_models(self) -> list[dict[str, Any]]:
        return [{"id": "gemini", "name": "Gemini", "backend": "gemini"}]

    def build_command(
        self,
        context: BackendContext,
        settings: ChatSettings,
        stream: TokenStream,
        continuation_id: str | None,
    ) -> list[str]:
        if not context.last_user_content.strip():
            raise ProtocolError(self.name, "no user turn to send")
        stream.model_version = settings.gemini.model
        prompt = render_prompt(context, style="tagged")
        return [self._command, *build_gemini_args(settings), "-p", prompt]


class CodexExecBackend(CliBackend):
    """``codex exec``: stateless, full context replayed every turn."""

    def __init__(self, command: str = "codex", **kwargs: Any) -> None:
        super().__init__(command, **kwargs)

    @property
    def name(self) -> str:
        return "codex"

    def list_models(self) -> list[dict[str, Any]]:
        return [{"id": "codex", "name": "Codex", "backend": "codex"}]

    def build_command(
        self,
        context: BackendContext,
        settings: ChatSettings,
        stream: TokenStream,
        continuation_id: str | None,
    ) -> list[str]:
        if not context.last_user_content.strip():
            raise ProtocolError(self.name, "no user turn to send")
        stream.model_version = settings.codex.model or CODEX_DEFAULT_MODEL
        prompt = render_prompt(context, style="chat")
        return [self._command, "exec", *build_codex_exec_args(settings), prompt]
