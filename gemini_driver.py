"""Gemini conversation driver — streams one exchange as session events.

Public API:
    driver = GeminiDriver(client, model, tools=DiagnosticTools.tool_declarations(),
                          tool_handler=tools.invoke, system_instruction=SYSTEM_PROMPT)
    with driver.subscribe(handler):
        await driver.send("Why is the print spooler failing?")
        ...                                  # events arrive until TurnIdle / SessionError

send() only acknowledges the prompt; the exchange runs as a background task on
the current event loop. Each model response is streamed with
generate_content_stream(); function calls are dispatched one at a time to the
tool handler and their results fed back until the model answers with text only.
"""

import asyncio
import itertools
import sys
from typing import Awaitable, Callable, Optional

from google import genai
from google.genai import types

from session_events import (
    ContentFragment,
    EventHandler,
    EventHub,
    FinalMessage,
    SessionError,
    Subscription,
    ToolCompleted,
    ToolStarted,
    TurnIdle,
    TurnStart,
)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_MODEL = "gemini-2.0-flash"
MAX_TOOL_ROUNDS = 25                      # model round-trips per exchange
MAX_API_ATTEMPTS = 3
RATE_LIMIT_BASE_WAIT_SECONDS = 30         # 30s, then 60s
MODEL_DETECTION_TIMEOUT_SECONDS = 10

ToolHandler = Callable[[str, dict], Awaitable[str]]


def _is_rate_limit(error: Exception) -> bool:
    err_str = str(error)
    return "429" in err_str or "RESOURCE_EXHAUSTED" in err_str


def _short_model_name(name: str) -> str:
    return name.split("/", 1)[1] if name.startswith("models/") else name


# ---------------------------------------------------------------------------
# Model detection
# ---------------------------------------------------------------------------

async def _list_model_names(client: genai.Client) -> list[str]:
    names = []
    pager = await client.aio.models.list()
    async for model in pager:
        actions = getattr(model, "supported_actions", None) or []
        if actions and "generateContent" not in actions:
            continue
        if model.name:
            names.append(_short_model_name(model.name))
    return names


async def resolve_model(
    client: genai.Client,
    requested: Optional[str] = None,
    timeout: float = MODEL_DETECTION_TIMEOUT_SECONDS,
    default: str = DEFAULT_MODEL,
) -> str:
    """Pick the model to use, waiting at most `timeout` seconds for the model list.

    Falls back to `requested` (or `default`) when detection times out or fails,
    and to `default` when the requested model is not offered.
    """
    fallback = requested or default
    try:
        available = await asyncio.wait_for(_list_model_names(client), timeout)
    except asyncio.TimeoutError:
        print(f"WARNING: Model detection timed out after {timeout}s; using {fallback}", file=sys.stderr)
        return fallback
    except Exception as e:
        print(f"WARNING: Model detection failed ({e}); using {fallback}", file=sys.stderr)
        return fallback

    if not available:
        return fallback
    if requested:
        if _short_model_name(requested) in available:
            return requested
        print(f"WARNING: Model '{requested}' is not available; using {default}", file=sys.stderr)
        return default
    return default


# ---------------------------------------------------------------------------
# GeminiDriver
# ---------------------------------------------------------------------------

class GeminiDriver:
    """Conversation driver over google-genai with a session-event stream."""

    def __init__(
        self,
        client: genai.Client,
        model: str = DEFAULT_MODEL,
        tools: Optional[types.Tool] = None,
        tool_handler: Optional[ToolHandler] = None,
        system_instruction: str = "",
        max_tool_rounds: int = MAX_TOOL_ROUNDS,
        rate_limit_wait_seconds: float = RATE_LIMIT_BASE_WAIT_SECONDS,
    ):
        self._client = client
        self.model = model
        self._tools = tools
        self.tool_handler = tool_handler
        self._system_instruction = system_instruction
        self._max_tool_rounds = max_tool_rounds
        self._rate_limit_wait = rate_limit_wait_seconds
        self._hub = EventHub()
        self._history: list[types.Content] = []
        self._task: Optional[asyncio.Task] = None
        self._message_ids = itertools.count(1)
        self._response_ids = itertools.count(1)

    @property
    def history(self) -> list[types.Content]:
        return list(self._history)

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, handler: EventHandler) -> Subscription:
        return self._hub.subscribe(handler)

    def reset(self, system_instruction: Optional[str] = None):
        """Start a fresh conversation, optionally with a new system instruction."""
        self._history.clear()
        if system_instruction is not None:
            self._system_instruction = system_instruction

    async def send(self, prompt: str) -> str:
        """Queue a user prompt and start the exchange. Returns the message id."""
        if self.busy:
            raise RuntimeError("An exchange is already in progress")
        self._history.append(types.Content(role="user", parts=[types.Part(text=prompt)]))
        self._task = asyncio.create_task(self._run_exchange())
        return f"msg-{next(self._message_ids)}"

    # --- Exchange ---

    def _config(self) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(
            tools=[self._tools] if self._tools is not None else None,
            system_instruction=self._system_instruction or None,
            automatic_function_calling=types.AutomaticFunctionCallingConfig(disable=True),
        )

    async def _run_exchange(self):
        self._hub.publish(TurnStart())
        try:
            for _round in range(self._max_tool_rounds):
                content = await self._stream_response()
                if content is None:
                    return

                fc_parts = [p for p in content.parts if p.function_call]
                if not fc_parts:
                    self._hub.publish(TurnIdle())
                    return

                response_parts = []
                for fc_part in fc_parts:
                    response_parts.append(await self._call_tool(fc_part.function_call))

                # All function responses go back as a single user turn
                self._history.append(types.Content(role="user", parts=response_parts))

            self._hub.publish(SessionError(
                f"Stopped after {self._max_tool_rounds} tool rounds without a final answer."
            ))
        except Exception as e:
            self._hub.publish(SessionError(f"Gemini API error: {e}"))

    async def _call_tool(self, function_call: types.FunctionCall) -> types.Part:
        name = function_call.name or ""
        args = dict(function_call.args or {})
        self._hub.publish(ToolStarted(name))
        if self.tool_handler is None:
            result = f"[ERROR] No tool handler is configured for {name}"
        else:
            try:
                result = await self.tool_handler(name, args)
            except Exception as e:
                result = f"[ERROR] Tool {name} failed: {e}"
        self._hub.publish(ToolCompleted(name))
        return types.Part(
            function_response=types.FunctionResponse(name=name, response={"result": result})
        )

    async def _stream_response(self) -> Optional[types.Content]:
        """Stream one model response, retrying on rate limits before anything was streamed."""
        for attempt in range(MAX_API_ATTEMPTS):
            response_id = next(self._response_ids)
            streamed_any = False
            text_chunks: list[str] = []
            fc_parts: list[types.Part] = []
            try:
                stream = await self._client.aio.models.generate_content_stream(
                    model=self.model,
                    contents=self._history,
                    config=self._config(),
                )
                chunk_index = 0
                async for chunk in stream:
                    if not chunk.candidates:
                        continue
                    content = chunk.candidates[0].content
                    for part_index, part in enumerate((content.parts if content else None) or []):
                        if part.function_call:
                            fc_parts.append(part)
                        elif part.text and not part.thought:
                            streamed_any = True
                            text_chunks.append(part.text)
                            self._hub.publish(ContentFragment(
                                id=f"r{response_id}-c{chunk_index}-p{part_index}", text=part.text,
                            ))
                    chunk_index += 1
            except Exception as e:
                if _is_rate_limit(e) and not streamed_any and attempt < MAX_API_ATTEMPTS - 1:
                    wait_sec = self._rate_limit_wait * (2 ** attempt)
                    print(f"\n[TroubleScout] Rate limited (429). Waiting {wait_sec:g}s, "
                          f"then retrying ({attempt + 2}/{MAX_API_ATTEMPTS})...")
                    await asyncio.sleep(wait_sec)
                    continue
                self._hub.publish(SessionError(f"Gemini API error: {e}"))
                return None

            full_text = "".join(text_chunks)
            parts = ([types.Part(text=full_text)] if full_text else []) + fc_parts
            if not parts:
                self._hub.publish(SessionError("Gemini returned an empty response."))
                return None
            if full_text:
                self._hub.publish(FinalMessage(full_text))
            content = types.Content(role="model", parts=parts)
            self._history.append(content)
            return content
        return None
