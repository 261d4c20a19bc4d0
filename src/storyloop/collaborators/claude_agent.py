"""Agent session client backed by the Claude Agent SDK.

Each prompt opens a ``ClaudeSDKClient`` rooted at the item's workspace and
streams assistant text back to the runner.
"""

from __future__ import annotations

import logging
import uuid
from typing import AsyncIterator

import logfire
from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ResultMessage,
    TextBlock,
)

from storyloop.collaborators.base import AgentSessionClient, ModelParams
from storyloop.errors import AgentTransportError

logger = logging.getLogger(__name__)


class ClaudeAgentSessionClient(AgentSessionClient):
    def __init__(self, *, max_turns: int | None = None) -> None:
        self._max_turns = max_turns
        self._sessions: dict[str, ClaudeAgentOptions] = {}

    def _build_options(self, workspace_path: str, params: ModelParams) -> ClaudeAgentOptions:
        extra_args: dict[str, str | None] = {}
        if params.effort:
            extra_args["effort"] = params.effort
        return ClaudeAgentOptions(
            cwd=workspace_path,
            model=params.model,
            system_prompt=params.system_prompt,
            permission_mode="bypassPermissions",
            max_turns=self._max_turns,
            extra_args=extra_args,
        )

    async def create_session(self, workspace_path: str, model_params: ModelParams) -> str:
        session_id = f"agent_{uuid.uuid4().hex[:16]}"
        self._sessions[session_id] = self._build_options(workspace_path, model_params)
        logger.info("Created agent session %s in %s", session_id, workspace_path)
        return session_id

    async def send_prompt(self, session_id: str, text: str) -> AsyncIterator[str]:
        options = self._sessions.get(session_id)
        if options is None:
            raise AgentTransportError(f"Unknown agent session: {session_id}")
        try:
            async with ClaudeSDKClient(options=options) as client:
                with logfire.span("agent_prompt", session_id=session_id):
                    await client.query(text)
                    async for message in client.receive_response():
                        if isinstance(message, AssistantMessage):
                            for block in message.content:
                                if isinstance(block, TextBlock) and block.text:
                                    yield block.text
                        elif isinstance(message, ResultMessage) and message.is_error:
                            raise AgentTransportError(
                                f"Agent session {session_id} ended with an error result"
                            )
        except AgentTransportError:
            raise
        except Exception as exc:
            raise AgentTransportError(f"Agent session {session_id} failed: {exc}") from exc

    async def close_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
