"""LLM providers - direct HTTP calls to the Anthropic and Ollama APIs."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from cjode.exceptions import ConfigurationError, LLMAPIError, LLMError
from cjode.logging import get_logger

log = get_logger(__name__)


ANTHROPIC_BASE_URL = "https://api.anthropic.com"
ANTHROPIC_API_VERSION = "2023-06-01"
OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"


@dataclass
class ToolCall:
    """A tool call from the LLM."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    tool_name: str | None = None
    is_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [
                {"id": tc.id, "name": tc.name, "arguments": tc.arguments}
                for tc in self.tool_calls
            ]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
            data["tool_name"] = self.tool_name
            data["is_error"] = self.is_error
        return data


@dataclass
class LLMResponse:
    """Response from the LLM."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    stop_reason: str = ""


@dataclass
class StreamChunk:
    """One increment of a streamed completion.

    Text chunks carry ``text``; the last chunk of every stream carries the
    assembled ``response`` (full text, tool calls and usage).
    """

    text: str = ""
    response: LLMResponse | None = None


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


def _usage(prompt_tokens: int, completion_tokens: int) -> dict[str, int]:
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": prompt_tokens + completion_tokens,
    }


def _tool_fields(tool: ToolDefinition | dict[str, Any]) -> tuple[str, str, dict[str, Any]]:
    """Read name/description/parameters from a ToolDefinition or a dict."""
    if isinstance(tool, dict):
        return (
            str(tool.get("name") or ""),
            str(tool.get("description") or ""),
            tool.get("parameters") or {},
        )
    return tool.name, tool.description or "", tool.parameters or {}


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    model: str = ""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        pass

    @abstractmethod
    async def complete_streaming(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        pass

    @abstractmethod
    def count_tokens(self, text: str) -> int:
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None


class AnthropicProvider(LLMProvider):
    """Anthropic Messages API provider."""

    def __init__(
        self,
        model: str = "claude-sonnet-4-20250514",
        api_key: str | None = None,
        base_url: str = ANTHROPIC_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        timeout: float = 120.0,
    ):
        if not api_key:
            raise ConfigurationError(
                "ANTHROPIC_API_KEY not configured. Set it in the environment or config.yaml."
            )
        self.model = model
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens

        self.client = httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_API_VERSION,
        }

    @staticmethod
    def _convert_messages(messages: list[Message]) -> tuple[str, list[dict[str, Any]]]:
        """Split out the system prompt and convert the rest to API turns.

        Consecutive tool results are merged into one user turn, which is how
        the API expects results for a multi-call assistant turn.
        """
        system_parts: list[str] = []
        result: list[dict[str, Any]] = []

        for msg in messages:
            if msg.role == "system":
                if msg.content:
                    system_parts.append(msg.content)
            elif msg.role == "user":
                result.append({"role": "user", "content": msg.content or ""})
            elif msg.role == "assistant":
                blocks: list[dict[str, Any]] = []
                if msg.content:
                    blocks.append({"type": "text", "text": msg.content})
                for tc in msg.tool_calls:
                    blocks.append({
                        "type": "tool_use",
                        "id": tc.id,
                        "name": tc.name,
                        "input": tc.arguments,
                    })
                if blocks:
                    result.append({"role": "assistant", "content": blocks})
            elif msg.role == "tool":
                block = {
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id or "",
                    "content": msg.content or "",
                }
                if msg.is_error:
                    block["is_error"] = True
                previous = result[-1] if result else None
                if (
                    previous is not None
                    and previous["role"] == "user"
                    and isinstance(previous["content"], list)
                ):
                    previous["content"].append(block)
                else:
                    result.append({"role": "user", "content": [block]})

        return "\n\n".join(system_parts), result

    @staticmethod
    def _convert_tools(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        result = []
        for tool in tools:
            name, description, parameters = _tool_fields(tool)
            if name:
                result.append({
                    "name": name,
                    "description": description,
                    "input_schema": parameters or {"type": "object", "properties": {}},
                })
        return result

    def _build_body(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
        temperature: float | None,
        max_tokens: int | None,
        stream: bool,
    ) -> dict[str, Any]:
        system, api_messages = self._convert_messages(messages)
        body: dict[str, Any] = {
            "model": self.model,
            "messages": api_messages,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.temperature if temperature is None else temperature,
            "stream": stream,
        }
        if system:
            body["system"] = system
        if tools:
            body["tools"] = self._convert_tools(tools)
        return body

    @staticmethod
    def _parse_content_blocks(blocks: list[dict[str, Any]]) -> tuple[str, list[ToolCall]]:
        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in blocks:
            kind = block.get("type")
            if kind == "text":
                text_parts.append(str(block.get("text", "")))
            elif kind == "tool_use":
                tool_calls.append(ToolCall(
                    id=str(block.get("id", "")),
                    name=str(block.get("name", "")),
                    arguments=block.get("input") or {},
                ))
        return "".join(text_parts), tool_calls

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion."""
        url = f"{self.base_url}/v1/messages"
        body = self._build_body(messages, tools, temperature, max_tokens, stream=False)

        try:
            log.debug("Calling Anthropic", model=self.model, msg_count=len(body["messages"]))
            response = await self.client.post(url, json=body, headers=self._headers())

            if not response.is_success:
                raise LLMAPIError(
                    f"Anthropic API error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )

            data = response.json()
            content, tool_calls = self._parse_content_blocks(data.get("content") or [])
            usage = data.get("usage") or {}
            return LLMResponse(
                content=content,
                tool_calls=tool_calls,
                model=str(data.get("model") or self.model),
                usage=_usage(int(usage.get("input_tokens", 0)), int(usage.get("output_tokens", 0))),
                stop_reason=str(data.get("stop_reason") or ""),
            )

        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Anthropic HTTP error: {e}")
        except json.JSONDecodeError as e:
            raise LLMError(f"Anthropic response decode error: {e}")

    async def complete_streaming(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a completion, yielding text chunks then the assembled response."""
        url = f"{self.base_url}/v1/messages"
        body = self._build_body(messages, tools, temperature, max_tokens, stream=True)

        text_parts: list[str] = []
        tool_blocks: dict[int, dict[str, Any]] = {}
        prompt_tokens = 0
        completion_tokens = 0
        stop_reason = ""

        try:
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"Anthropic API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    try:
                        event = json.loads(line[5:].strip())
                    except json.JSONDecodeError:
                        continue

                    kind = event.get("type")
                    if kind == "message_start":
                        usage = (event.get("message") or {}).get("usage") or {}
                        prompt_tokens = int(usage.get("input_tokens", 0))
                    elif kind == "content_block_start":
                        block = event.get("content_block") or {}
                        if block.get("type") == "tool_use":
                            tool_blocks[int(event.get("index", 0))] = {
                                "id": str(block.get("id", "")),
                                "name": str(block.get("name", "")),
                                "json": "",
                            }
                    elif kind == "content_block_delta":
                        delta = event.get("delta") or {}
                        if delta.get("type") == "text_delta":
                            text = str(delta.get("text", ""))
                            if text:
                                text_parts.append(text)
                                yield StreamChunk(text=text)
                        elif delta.get("type") == "input_json_delta":
                            block = tool_blocks.get(int(event.get("index", 0)))
                            if block is not None:
                                block["json"] += str(delta.get("partial_json", ""))
                    elif kind == "message_delta":
                        stop_reason = str((event.get("delta") or {}).get("stop_reason") or stop_reason)
                        usage = event.get("usage") or {}
                        completion_tokens = int(usage.get("output_tokens", completion_tokens))
                    elif kind == "error":
                        error = event.get("error") or {}
                        raise LLMAPIError(f"Anthropic stream error: {error.get('message', error)}")
                    elif kind == "message_stop":
                        break

        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Anthropic streaming error: {e}")

        tool_calls: list[ToolCall] = []
        for index in sorted(tool_blocks):
            block = tool_blocks[index]
            raw = block["json"].strip()
            try:
                arguments = json.loads(raw) if raw else {}
            except json.JSONDecodeError:
                arguments = {"_unparsed_arguments": raw}
            if not isinstance(arguments, dict):
                arguments = {"_unparsed_arguments": raw}
            tool_calls.append(ToolCall(id=block["id"], name=block["name"], arguments=arguments))

        yield StreamChunk(response=LLMResponse(
            content="".join(text_parts),
            tool_calls=tool_calls,
            model=self.model,
            usage=_usage(prompt_tokens, completion_tokens),
            stop_reason=stop_reason,
        ))

    def count_tokens(self, text: str) -> int:
        """Count tokens (rough estimate, ~4 characters per token)."""
        return len(text) // 4

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


class OllamaProvider(LLMProvider):
    """Direct Ollama API provider."""

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        api_key: str | None = None,
        timeout: float = 120.0,
    ):
        """Initialize Ollama provider.

        Args:
            model: Ollama model name (e.g., 'llama3.2', 'qwen3:32b')
            base_url: Ollama API base URL
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            api_key: Optional API key (Ollama usually doesn't need one locally)
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key

        self.client = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
        )

    @staticmethod
    def _convert_messages(messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to Ollama format."""
        result = []
        for msg in messages:
            entry: dict[str, Any] = {"role": msg.role, "content": msg.content or ""}
            if msg.role == "assistant" and msg.tool_calls:
                entry["tool_calls"] = [
                    {"function": {"name": tc.name, "arguments": tc.arguments}}
                    for tc in msg.tool_calls
                ]
            elif msg.role == "tool" and msg.tool_name:
                entry["tool_name"] = msg.tool_name
            result.append(entry)
        return result

    @staticmethod
    def _convert_tools(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert tools to Ollama format."""
        result = []
        for tool in tools:
            name, description, parameters = _tool_fields(tool)
            if name:
                result.append({
                    "type": "function",
                    "function": {
                        "name": name,
                        "description": description,
                        "parameters": parameters,
                    },
                })
        return result

    def _build_body(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
        temperature: float | None,
        max_tokens: int | None,
        stream: bool,
    ) -> dict[str, Any]:
        options: dict[str, Any] = {
            "num_ctx": 65536,
            "temperature": self.temperature if temperature is None else temperature,
        }
        if max_tokens or self.max_tokens:
            options["num_predict"] = max_tokens or self.max_tokens

        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages),
            "stream": stream,
            "options": options,
        }
        if tools:
            body["tools"] = self._convert_tools(tools)
        return body

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _parse_tool_calls(raw_calls: list[dict[str, Any]], offset: int = 0) -> list[ToolCall]:
        calls = []
        for idx, tc in enumerate(raw_calls or [], start=offset):
            function = tc.get("function", {}) or {}
            arguments = function.get("arguments", {})
            if isinstance(arguments, str):
                try:
                    arguments = json.loads(arguments)
                except json.JSONDecodeError:
                    arguments = {"_unparsed_arguments": arguments}
            calls.append(ToolCall(
                id=str(tc.get("id") or f"ollama_call_{idx}"),
                name=str(function.get("name", "")),
                arguments=arguments if isinstance(arguments, dict) else {},
            ))
        return calls

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion."""
        url = f"{self.base_url}/api/chat"
        body = self._build_body(messages, tools, temperature, max_tokens, stream=False)

        try:
            log.debug("Calling Ollama", model=self.model, url=url, msg_count=len(body["messages"]))
            response = await self.client.post(url, json=body, headers=self._headers())

            if not response.is_success:
                raise LLMAPIError(
                    f"Ollama API error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )

            data = response.json()
            message = data.get("message", {}) or {}
            return LLMResponse(
                content=str(message.get("content", "") or ""),
                tool_calls=self._parse_tool_calls(message.get("tool_calls") or []),
                model=self.model,
                usage=_usage(int(data.get("prompt_eval_count", 0)), int(data.get("eval_count", 0))),
                stop_reason=str(data.get("done_reason") or ""),
            )

        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama HTTP error: {e}")
        except json.JSONDecodeError as e:
            raise LLMError(f"Ollama response decode error: {e}")

    async def complete_streaming(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a completion."""
        url = f"{self.base_url}/api/chat"
        body = self._build_body(messages, tools, temperature, max_tokens, stream=True)

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        usage = _usage(0, 0)
        stop_reason = ""

        try:
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"Ollama API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    message = chunk.get("message", {}) or {}
                    content = message.get("content")
                    if content:
                        text_parts.append(content)
                        yield StreamChunk(text=content)
                    if message.get("tool_calls"):
                        tool_calls.extend(
                            self._parse_tool_calls(message["tool_calls"], offset=len(tool_calls))
                        )
                    if chunk.get("done"):
                        usage = _usage(int(chunk.get("prompt_eval_count", 0)), int(chunk.get("eval_count", 0)))
                        stop_reason = str(chunk.get("done_reason") or "")
                        break

        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama streaming error: {e}")

        yield StreamChunk(response=LLMResponse(
            content="".join(text_parts),
            tool_calls=tool_calls,
            model=self.model,
            usage=usage,
            stop_reason=stop_reason,
        ))

    def count_tokens(self, text: str) -> int:
        """Count tokens (rough estimate for Ollama models)."""
        return len(text) // 4

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "anthropic",
    model: str = "claude-sonnet-4-20250514",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 4096,
    timeout: float = 120.0,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (anthropic, claude, ollama)
        model: Model name
        api_key: Optional API key
        base_url: Optional base URL
        temperature: Default temperature
        max_tokens: Default max tokens per call

    Returns:
        Configured LLMProvider instance
    """
    name = (provider or "").strip().lower()
    if name in {"anthropic", "claude"}:
        return AnthropicProvider(
            model=model,
            api_key=api_key,
            base_url=base_url or ANTHROPIC_BASE_URL,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )
    if name == "ollama":
        return OllamaProvider(
            model=model,
            base_url=base_url or OLLAMA_NATIVE_BASE_URL,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=api_key,
            timeout=timeout,
        )
    raise ConfigurationError(f"Provider '{provider}' not supported. Use 'anthropic' or 'ollama'.")


# Global provider instances
_provider: LLMProvider | None = None
_reviewer_provider: LLMProvider | None = None


def get_provider() -> LLMProvider:
    """Get the global LLM provider instance."""
    global _provider
    if _provider is None:
        from cjode.config import get_config
        cfg = get_config()
        _provider = create_provider(
            provider=cfg.model.provider,
            model=cfg.model.model,
            api_key=cfg.model.resolved_api_key() or None,
            base_url=cfg.model.base_url or None,
            temperature=cfg.model.temperature,
            max_tokens=cfg.agent.resolved_max_output_tokens(),
            timeout=cfg.model.request_timeout,
        )
    return _provider


def get_reviewer_provider() -> LLMProvider:
    """Get the provider bound to the fast auxiliary model used for command review."""
    global _reviewer_provider
    if _reviewer_provider is None:
        from cjode.config import get_config
        cfg = get_config()
        _reviewer_provider = create_provider(
            provider=cfg.model.provider,
            model=cfg.model.reviewer_model,
            api_key=cfg.model.resolved_api_key() or None,
            base_url=cfg.model.base_url or None,
            temperature=0.0,
            max_tokens=64,
            timeout=cfg.model.request_timeout,
        )
    return _reviewer_provider


def set_provider(provider: LLMProvider | None) -> None:
    """Set the global LLM provider instance."""
    global _provider
    _provider = provider


def set_reviewer_provider(provider: LLMProvider | None) -> None:
    """Set the global reviewer provider instance."""
    global _reviewer_provider
    _reviewer_provider = provider
