"""LLM access: one-shot agent chats (AG2) and token streaming (openai SDK).

Everything that talks to a model goes through an ``LLMGateway`` so the server,
the pipelines and the tests can swap in another implementation.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from typing import Any, Protocol

import autogen
from openai import AzureOpenAI, OpenAI

from .config import build_role_entry, build_role_llm_config
from .errors import LLMNotConfiguredError
from .models import AgentProfile, ProjectConfig

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# AG2 helpers
# ---------------------------------------------------------------------------

def make_orchestrator() -> autogen.UserProxyAgent:
    """Create a standard orchestrator agent."""
    return autogen.UserProxyAgent(
        name="Orchestrator",
        human_input_mode="NEVER",
        code_execution_config=False,
    )


def extract_text(response: Any) -> str:
    """Extract the reply text from an AG2 chat result."""
    if hasattr(response, "summary") and response.summary:
        text = str(response.summary)
    elif hasattr(response, "chat_history") and response.chat_history:
        last = response.chat_history[-1]
        text = last.get("content", "") if isinstance(last, dict) else str(last)
    else:
        text = str(response)
    return (text or "").strip()


def extract_json_block(text: str) -> str | None:
    """Return the outermost ``{...}`` span of *text* (fences removed), if any."""
    stripped = re.sub(r"```(?:json)?", "", text or "")
    if "{" not in stripped or "}" not in stripped:
        return None
    return stripped[stripped.find("{"):stripped.rfind("}") + 1]


def parse_json_reply(text: str, model_cls: type) -> Any:
    """Validate a Pydantic model from a free-form reply; ``None`` when impossible."""
    block = extract_json_block(text)
    if block is None:
        logger.warning("No JSON object in %s reply", model_cls.__name__)
        return None
    try:
        return model_cls.model_validate_json(block)
    except ValueError as e:
        logger.warning("Failed to parse %s from response: %s", model_cls.__name__, e)
        return None


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class LLMGateway(Protocol):
    """What the rest of the package needs from a model provider."""

    def is_configured(self) -> bool: ...

    def ask(self, profile: AgentProfile, message: str) -> str: ...

    def chat(self, profile: AgentProfile, messages: list[dict[str, str]]) -> str: ...

    def stream(self, profile: AgentProfile, message: str | list[dict[str, str]]) -> Iterator[str]: ...


class AgentLLM:
    """Default gateway: AG2 ``AssistantAgent`` for one-shot asks, openai SDK for streams."""

    def __init__(self, config: ProjectConfig) -> None:
        self.config = config
        self._clients: dict[str, OpenAI] = {}

    def is_configured(self) -> bool:
        return bool(self.config.endpoint.api_key)

    def _require_key(self) -> None:
        if not self.is_configured():
            raise LLMNotConfiguredError()

    def make_agent(self, profile: AgentProfile) -> autogen.AssistantAgent:
        return autogen.AssistantAgent(
            name=profile.name,
            system_message=profile.system_message,
            llm_config=build_role_llm_config(
                profile.role, self.config,
                temperature=profile.temperature, max_tokens=profile.max_tokens,
            ),
        )

    def ask(self, profile: AgentProfile, message: str) -> str:
        self._require_key()
        orchestrator = make_orchestrator()
        response = orchestrator.initiate_chat(
            self.make_agent(profile), message=message, max_turns=1, silent=True,
        )
        text = extract_text(response)
        logger.debug("%s replied with %d chars", profile.name, len(text))
        return text

    def chat(self, profile: AgentProfile, messages: list[dict[str, str]]) -> str:
        """Reply to an existing conversation (role-tagged messages, no system entry)."""
        self._require_key()
        if not messages:
            return ""
        reply = self.make_agent(profile).generate_reply(messages=messages)
        if isinstance(reply, dict):
            reply = reply.get("content") or ""
        text = (reply or "").strip()
        logger.debug("%s replied with %d chars after %d messages", profile.name, len(text), len(messages))
        return text

    def _client_for(self, entry: dict[str, Any]) -> OpenAI:
        key = f"{entry.get('api_type', 'openai')}|{entry.get('base_url') or entry.get('azure_endpoint')}"
        client = self._clients.get(key)
        if client is None:
            if entry.get("api_type") == "azure":
                client = AzureOpenAI(
                    api_key=entry["api_key"],
                    api_version=entry.get("api_version"),
                    azure_endpoint=entry.get("azure_endpoint") or entry["base_url"],
                    timeout=self.config.timeout,
                )
            else:
                client = OpenAI(
                    api_key=entry["api_key"],
                    base_url=entry.get("base_url") or None,
                    timeout=self.config.timeout,
                )
            self._clients[key] = client
        return client

    def stream(self, profile: AgentProfile, message: str | list[dict[str, str]]) -> Iterator[str]:
        """Yield content deltas of a streamed chat completion."""
        self._require_key()
        entry = build_role_entry(profile.role, self.config)
        client = self._client_for(entry)
        model = entry.get("azure_deployment") or entry["model"]
        history = [{"role": "user", "content": message}] if isinstance(message, str) else list(message)
        logger.info("Streaming %s with model %s", profile.name, model)
        stream = client.chat.completions.create(
            model=model,
            messages=[{"role": "system", "content": profile.system_message}, *history],
            temperature=profile.temperature,
            max_tokens=profile.max_tokens,
            stream=True,
        )
        total = 0
        for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content or ""
            if delta:
                total += len(delta)
                yield delta
        logger.info("%s stream finished, %d chars", profile.name, total)
