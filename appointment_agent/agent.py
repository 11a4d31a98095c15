"""LangGraph booking agent.

Architecture:
  One customer turn is a small StateGraph whose ``phase`` field makes the
  tool loop explicit:

    AWAITING_TEXT ──model──▶ FINAL_RESPONSE                     (plain answer)
                  └───────▶ TOOLS_PENDING ──tools──▶ TOOLS_EXECUTED ──model──▶ ...

  After a tool round the model is called again with an extra instruction
  to answer the customer now.  Tool rounds are capped at
  ``MAX_TOOL_ROUNDS`` so a model can chain ``get_services`` →
  ``get_available_slots`` → ``create_appointment`` but never loop forever.
  If the final model message carries no text, or still asks for tools when
  the cap is reached, the turn ends with ``FALLBACK_REPLY``.

  Memory:
    The graph is stateless.  Callers (web chat, Telegram) pass the full
    conversation history on every turn.
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Callable, Sequence
from datetime import datetime
from enum import Enum
from typing import Annotated, Any

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import (
    AIMessage,
    AnyMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from langchain_core.tools import BaseTool
from langgraph.graph import END, START, StateGraph
from langgraph.graph.message import add_messages
from typing_extensions import TypedDict

from appointment_agent.config import (
    ANTHROPIC_API_KEY,
    MAX_TOOL_ROUNDS,
    MODEL_MAX_TOKENS,
    MODEL_NAME,
    MODEL_TEMPERATURE,
)
from appointment_agent.errors import AgentError
from appointment_agent.models import Business, ConversationTurn
from appointment_agent.prompts import build_system_prompt
from appointment_agent.services.booking import BookingService
from appointment_agent.services.metrics import metrics
from appointment_agent.tools.booking import build_booking_tools, tool_failure

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "Sorry, I couldn't process your request properly. Please try again."

ANSWER_NOW_INSTRUCTION = (
    "You have just received tool results. Use them to answer the customer now, "
    "in plain text. Only call another tool if the answer truly requires it."
)

_REASONING_TAGS_RE = re.compile(
    r"<(think|reasoning|thought|reasoning_text)>.*?</\1>",
    re.IGNORECASE | re.DOTALL,
)


class TurnPhase(str, Enum):
    AWAITING_TEXT = "awaiting_text"
    TOOLS_PENDING = "tools_pending"
    TOOLS_EXECUTED = "tools_executed"
    FINAL_RESPONSE = "final_response"


class TurnState(TypedDict):
    """State of one customer turn.

    ``messages`` uses the ``add_messages`` reducer so nodes only return the
    messages they add.  ``tool_rounds`` counts completed tool executions.
    """

    messages: Annotated[list[AnyMessage], add_messages]
    phase: TurnPhase
    tool_rounds: int


# ── Text helpers ────────────────────────────────────────────────────


def clean_response_text(text: str) -> str:
    """Strip model reasoning blocks (``<think>…</think>`` and friends)."""
    return _REASONING_TAGS_RE.sub("", text or "").strip()


def message_text(message: BaseMessage) -> str:
    """Concatenate the text blocks of a message, ignoring tool-use blocks."""
    content = message.content
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def to_langchain_messages(history: Sequence[ConversationTurn | dict[str, Any]]) -> list[AnyMessage]:
    """Convert stored turns to chat messages; ``system`` turns are dropped."""
    messages: list[AnyMessage] = []
    for raw in history:
        turn = raw if isinstance(raw, ConversationTurn) else ConversationTurn.model_validate(raw)
        if turn.role == "user":
            messages.append(HumanMessage(content=turn.content))
        elif turn.role == "assistant":
            messages.append(AIMessage(content=turn.content))
    return messages


def build_llm() -> ChatAnthropic:
    """The tool-calling chat model."""
    return ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=MODEL_TEMPERATURE,
        max_tokens=MODEL_MAX_TOKENS,
    )


# ── Agent ───────────────────────────────────────────────────────────


class BookingAgent:
    """Runs one booking turn for a business over a supplied history."""

    def __init__(
        self,
        booking: BookingService,
        llm: Any | None = None,
        *,
        max_tool_rounds: int = MAX_TOOL_ROUNDS,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._booking = booking
        self._llm = llm if llm is not None else build_llm()
        self._max_tool_rounds = max_tool_rounds
        self._clock = clock

    # ── Nodes ────────────────────────────────────────────────────────

    def _make_model_node(self, business: Business, tools: list[BaseTool]):
        llm_with_tools = self._llm.bind_tools(tools)
        system_prompt = build_system_prompt(business, self._clock())

        def model_node(state: TurnState) -> dict:
            prompt = system_prompt
            if state["phase"] == TurnPhase.TOOLS_EXECUTED:
                prompt = f"{system_prompt}\n\n{ANSWER_NOW_INSTRUCTION}"

            t0 = time.perf_counter()
            try:
                response = llm_with_tools.invoke([SystemMessage(content=prompt)] + state["messages"])
            except Exception as exc:
                metrics.record_failure(
                    "anthropic", "llm_invoke",
                    error_type=type(exc).__name__,
                    latency_ms=(time.perf_counter() - t0) * 1000,
                )
                raise
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_success("anthropic", "llm_invoke", latency_ms=elapsed)

            wants_tools = bool(getattr(response, "tool_calls", None))
            if wants_tools and state["tool_rounds"] >= self._max_tool_rounds:
                logger.warning(
                    "Tool round limit (%d) reached for business %s; ending turn",
                    self._max_tool_rounds, business.id,
                )
                wants_tools = False
            logger.debug(
                "Model responded in %.0fms (round %d, tool calls: %s)",
                elapsed, state["tool_rounds"], wants_tools,
            )
            phase = TurnPhase.TOOLS_PENDING if wants_tools else TurnPhase.FINAL_RESPONSE
            return {"messages": [response], "phase": phase}

        return model_node

    @staticmethod
    def _make_tools_node(tools: list[BaseTool]):
        by_name = {t.name: t for t in tools}

        def tools_node(state: TurnState) -> dict:
            last = state["messages"][-1]
            results: list[ToolMessage] = []
            for call in last.tool_calls:
                tool = by_name.get(call["name"])
                if tool is None:
                    content = json.dumps(
                        {"success": False, "error_type": "unknown_tool",
                         "error": f"Unknown tool: {call['name']}"}
                    )
                else:
                    try:
                        content = tool.invoke(call["args"])
                    except Exception as exc:
                        logger.exception("Tool %s raised", call["name"])
                        content = tool_failure(exc)
                results.append(
                    ToolMessage(content=content, tool_call_id=call["id"], name=call["name"])
                )
            return {
                "messages": results,
                "phase": TurnPhase.TOOLS_EXECUTED,
                "tool_rounds": state["tool_rounds"] + 1,
            }

        return tools_node

    # ── Graph assembly ───────────────────────────────────────────────

    def build_graph(self, business: Business):
        """Compile the turn graph with tools bound to *business*."""
        tools = build_booking_tools(self._booking, business)

        graph = StateGraph(TurnState)
        graph.add_node("model", self._make_model_node(business, tools))
        graph.add_node("tools", self._make_tools_node(tools))

        graph.add_edge(START, "model")
        graph.add_conditional_edges(
            "model",
            lambda state: "tools" if state["phase"] == TurnPhase.TOOLS_PENDING else END,
            {"tools": "tools", END: END},
        )
        graph.add_edge("tools", "model")
        return graph.compile()

    def respond(self, business: Business, history: Sequence[ConversationTurn | dict[str, Any]]) -> str:
        """Produce the assistant reply to the last customer message in *history*.

        Model and network errors propagate; an empty final answer becomes
        ``FALLBACK_REPLY``.
        """
        messages = to_langchain_messages(history)
        if not messages:
            logger.warning("Empty conversation for business %s", business.id)
            return FALLBACK_REPLY

        result = self.build_graph(business).invoke(
            {"messages": messages, "phase": TurnPhase.AWAITING_TEXT, "tool_rounds": 0},
            config={"recursion_limit": 2 * self._max_tool_rounds + 4},
        )
        try:
            return self._final_text(result)
        except AgentError as exc:
            logger.warning("Falling back for business %s: %s", business.id, exc)
            return FALLBACK_REPLY

    @staticmethod
    def _final_text(state: dict) -> str:
        if state.get("phase") != TurnPhase.FINAL_RESPONSE:
            raise AgentError(f"Turn ended in phase {state.get('phase')}")
        last = state["messages"][-1]
        # Text next to unexecuted tool calls announces work that never happened.
        if getattr(last, "tool_calls", None):
            raise AgentError("Tool round limit reached with tool calls still pending")
        text = clean_response_text(message_text(last))
        if not text:
            raise AgentError("Model returned no text")
        return text
