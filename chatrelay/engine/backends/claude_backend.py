"""Claude CLI backend.

Runs ``claude --print --output-format stream-json --verbose`` once per
turn. Session continuity comes from the CLI itself: the first turn pins a
fresh ``--session-id``, later turns ``--resume`` it, so only the newest
user turn needs to be sent.

Auth: the CLI's own login. ``ANTHROPIC_API_KEY`` is removed from the
child environment so a stray key never overrides it.
"""
from __future__ import annotations

import codecs
import logging
import os
import uuid
from typing import TYPE_CHECKING, Any

from ..context import BackendContext, render_prompt
from ..errors import ProcessFailureError, ProtocolError
from .base import CliBackend, TokenStream
from .stream_json import StreamJsonParser, parse_stream_json

if TYPE_CHECKING:
    from ..settings import ChatSettings

logger = logging.getLogger(__name__)

CLAUDE_FALLBACK_PATHS = (
    "~/.local/bin/claude",
    "~/.claude/local/claude",
    "/usr/local/bin/claude",
)


def _as_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def build_claude_args(settings: ChatSettings, system_prompt: str = "") -> list[str]:
    """CLI flags derived from settings (everything except the prompt)."""
    claude = settings.claude
    args: list[str] = []

    prompt = "\n\n".join(p for p in (system_prompt, claude.system_prompt) if p)
    if prompt:
        args.extend(["--append-system-prompt", prompt])
    if claude.model:
        args.extend(["--model", claude.model])
    if claude.agent:
        args.extend(["--agent", claude.agent])
    dirs = [os.path.expanduser(d) for d in _as_list(claude.additional_dirs)]
    if dirs:
        args.extend(["--add-dir", *dirs])
    allowed = _as_list(claude.allowed_tools)
    if allowed:
        args.extend(["--allowed-tools", *allowed])
    disallowed = _as_list(claude.disallowed_tools)
    if disallowed:
        args.extend(["--disallowed-tools", *disallowed])
    if claude.permission_mode:
        args.extend(["--permission-mode", claude.permission_mode])
    for config_path in _as_list(claude.mcp_config):
        args.extend(["--mcp-config", config_path])
    if claude.strict_mcp_config:
        args.append("--strict-mcp-config")
    for plugin_dir in _as_list(claude.plugin_dirs):
        args.extend(["--plugin-dir", plugin_dir])
    if claude.max_budget_usd is not None:
        args.extend(["--max-budget-usd", str(claude.max_budget_usd)])
    for beta in _as_list(claude.betas):
        args.extend(["--beta", beta])
    if claude.dangerously_skip_permissions:
        args.append("--dangerously-skip-permissions")
    return args


class _StreamJsonDecoder:
    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.parser = StreamJsonParser()

    @property
    def finished(self) -> bool:
        return self.parser.finished

    def _sync(self, stream: TokenStream) -> None:
        parser = self.parser
        if parser.session_id:
            stream.continuation_id = parser.session_id
        if parser.model:
            stream.model_version = parser.model
        if parser.usage:
            stream.usage = dict(parser.usage)
        for tool in parser.tools:
            stream.add_tool(tool)
        if parser.error:
            raise ProcessFailureError("claude", None, parser.error)

    def feed(self, chunk: bytes, stream: TokenStream) -> list[str]:
        texts = self.parser.feed(self._decoder.decode(chunk))
        self._sync(stream)
        return texts

    def flush(self, stream: TokenStream) -> list[str]:
        texts = self.parser.feed(self._decoder.decode(b"", final=True))
        texts.extend(self.parser.finish())
        self._sync(stream)
        # Some CLI versions only report text in the final result event.
        if not self.parser.text_parts and self.parser.result_text:
            texts.append(self.parser.result_text)
        return texts


class ClaudeBackend(CliBackend):
    """Backend backed by the Claude CLI's stream-json output."""

    command_fallbacks = CLAUDE_FALLBACK_PATHS

    def __init__(self, command: str = "claude", **kwargs: Any) -> None:
        super().__init__(command, **kwargs)

    @property
    def name(self) -> str:
        return "claude"

    def list_models(self) -> list[dict[str, Any]]:
        return [{"id": "claude", "name": "Claude", "backend": "claude"}]

    def build_env(self) -> dict[str, str] | None:
        env = os.environ.copy()
        env.pop("ANTHROPIC_API_KEY", None)
        return env

    def build_command(
        self,
        context: BackendContext,
        settings: ChatSettings,
        stream: TokenStream,
        continuation_id: str | None,
    ) -> list[str]:
        argv = [self._command, "--print", "--output-format", "stream-json", "--verbose"]
        if continuation_id:
            argv.extend(["--resume", continuation_id])
            prompt = context.last_user_content
        else:
            session_id = str(uuid.uuid4())
            stream.continuation_id = session_id
            argv.extend(["--session-id", session_id])
            # No CLI-side memory yet: replay the window when there is one.
            if len(context.turns) > 1:
                prompt = render_prompt(BackendContext("", context.turns), style="chat")
            else:
                prompt = context.last_user_content
        if not prompt.strip():
            raise ProtocolError(self.name, "no user turn to send")
        argv.extend(build_claude_args(settings, context.system_prompt))
        argv.append(prompt)
        return argv

    def _make_decoder(self) -> _StreamJsonDecoder:
        return _StreamJsonDecoder()

    def recover_text(self, raw: str) -> str:
        parser = parse_stream_json(raw)
        if parser.error:
            raise ProtocolError(self.name, parser.error)
        text = parser.text or (parser.result_text or "")
        return text.strip()
