"""
Agentic decision loop.

A bounded request/response exchange in which the model gathers data through
tools and then answers with an Intent. It runs as a small state machine:

    GATHERING      model may call tools; text answers are parsed
    AWAITING_FINAL tool or time budget spent; one last turn without tools
    DONE           an Intent was parsed
    FAILED         no usable Intent; a neutral one is returned

Provider errors (AIProviderError) propagate. Everything else degrades to a
neutral intent. The clock is injected so budgets are testable.
"""

import json
import logging
import time
from enum import Enum
from typing import Callable, List, Optional

from ai.intent import IntentWithUsage, TokenUsage, neutral_intent, parse_intent_json
from ai.model_client import ChatMessage, ModelClient, ModelResponse
from ai.prompts import AGENTIC_SYSTEM_PROMPT, CORRECTIVE_RETRY_MESSAGE, FORCE_FINAL_MESSAGE
from ai.tools import TOOL_DEFINITIONS, ToolExecutor
from core.exceptions import AIProviderError, IntentParseError

log = logging.getLogger(__name__)

DEFAULT_MAX_TOOL_CALLS = 10
DEFAULT_MAX_TIME_MS = 30000


class LoopState(Enum):
    GATHERING = "gathering"
    AWAITING_FINAL = "awaiting_final"
    DONE = "done"
    FAILED = "failed"


class AgenticLoop:
    """
    One agentic acquisition for one market.

    Args:
        client: Model client (must support tools)
        executor: Tool executor bound to this market
        market: Requested market; overrides whatever market the model names
        max_tool_calls: Tool-call budget
        max_time_ms: Wall-clock budget
        clock: Monotonic seconds
        on_response: Called with (response, seconds) after every model call
    """

    def __init__(self, client: ModelClient, executor: ToolExecutor, market: str,
                 max_tool_calls: int = DEFAULT_MAX_TOOL_CALLS,
                 max_time_ms: int = DEFAULT_MAX_TIME_MS,
                 clock: Callable[[], float] = time.monotonic,
                 on_response: Optional[Callable[[ModelResponse, float], None]] = None):
        self.client = client
        self.executor = executor
        self.market = market
        self.max_tool_calls = max_tool_calls
        self.max_time_ms = max_time_ms
        self.clock = clock
        self.on_response = on_response

        self.state = LoopState.GATHERING
        self.messages: List[ChatMessage] = []
        self.usage = TokenUsage()
        self.tool_call_count = 0
        self._json_retry_used = False
        self._started = 0.0

    def run(self, initial_message: str) -> IntentWithUsage:
        self.messages = [ChatMessage(role="user", content=initial_message)]
        self._started = self.clock()
        self.state = LoopState.GATHERING

        # Guards against a model that keeps answering with unparseable text
        max_iterations = self.max_tool_calls + 3
        iteration = 0

        while self.state is LoopState.GATHERING:
            if iteration >= max_iterations or self.tool_call_count >= self.max_tool_calls:
                log.info(f"Tool budget spent after {self.tool_call_count} calls, forcing decision")
                self.state = LoopState.AWAITING_FINAL
                break
            if self._elapsed_ms() > self.max_time_ms:
                log.info(f"Time limit reached ({self.max_time_ms}ms), forcing decision")
                self.state = LoopState.AWAITING_FINAL
                break
            iteration += 1

            response = self._call(with_tools=True)
            if response is None:
                return self._fail()

            if not response.tool_calls:
                result = self._handle_text(response.text)
                if result is not None:
                    return result
                continue

            self.messages.append(ChatMessage(
                role="assistant", content=response.text or "", tool_calls=response.tool_calls,
            ))
            for call in response.tool_calls:
                self.tool_call_count += 1
                log.info(
                    f"Tool call #{self.tool_call_count}: {call.name}"
                    f"({json.dumps(call.args, default=str)[:100]})"
                )
                self.messages.append(ChatMessage(
                    role="tool",
                    content=self.executor.execute(call.name, call.args),
                    tool_call_id=call.id,
                    tool_name=call.name,
                ))

        return self._final_turn()

    def _elapsed_ms(self) -> float:
        return (self.clock() - self._started) * 1000

    def _call(self, with_tools: bool) -> Optional[ModelResponse]:
        start = self.clock()
        try:
            response = self.client.complete(
                AGENTIC_SYSTEM_PROMPT,
                self.messages,
                tools=TOOL_DEFINITIONS if with_tools else None,
            )
        except AIProviderError:
            raise
        except Exception as e:
            log.error(f"Agentic model call failed: {e}")
            return None
        self.usage.add(response.input_tokens, response.output_tokens)
        if self.on_response:
            self.on_response(response, self.clock() - start)
        return response

    def _handle_text(self, text: Optional[str]) -> Optional[IntentWithUsage]:
        """Parse a text answer. Returns None when a corrective retry was queued."""
        if not text:
            return self._fail()
        try:
            intent = parse_intent_json(text, self.market)
        except IntentParseError as e:
            if self._json_retry_used:
                log.error(f"Intent JSON still invalid after retry: {e}")
                return self._fail()
            self._json_retry_used = True
            log.warning(f"Intent JSON invalid, asking model to retry: {e}")
            self.messages.append(ChatMessage(role="assistant", content=text))
            self.messages.append(ChatMessage(role="user", content=CORRECTIVE_RETRY_MESSAGE))
            return None
        return self._done(intent)

    def _final_turn(self) -> IntentWithUsage:
        self.messages.append(ChatMessage(role="user", content=FORCE_FINAL_MESSAGE))
        response = self._call(with_tools=False)
        if response is None or not response.text:
            return self._fail()
        try:
            intent = parse_intent_json(response.text, self.market)
        except IntentParseError as e:
            log.error(f"Forced final answer was not a valid intent: {e}")
            return self._fail()
        return self._done(intent)

    def _done(self, intent) -> IntentWithUsage:
        intent.market = self.market
        self.state = LoopState.DONE
        log.info(
            f"Agentic loop complete: {self.tool_call_count} tool calls, "
            f"{self.usage.total_tokens} tokens, decision: {intent.bias} ({intent.confidence})"
        )
        return IntentWithUsage(intent=intent, usage=self.usage, model=self.client.model,
                               tool_calls=self.tool_call_count)

    def _fail(self) -> IntentWithUsage:
        self.state = LoopState.FAILED
        return IntentWithUsage(intent=neutral_intent(self.market), usage=self.usage,
                               model=self.client.model, tool_calls=self.tool_call_count)
