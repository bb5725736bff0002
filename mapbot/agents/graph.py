"""
Map assistant LangGraph pipeline.

Graph topology:
    START → agent ⟷ tools → END

Nodes:
    agent — LLM ReAct step (reason → tool call or respond)
    tools — ToolNode executing the bridged MCP tools

Routing:
    agent → tools (if tool_calls present)
    agent → END   (if final response)
    tools → agent

The graph holds no per-session state: chat history arrives in the input
``messages`` each turn and nothing is checkpointed.
"""

from typing import Annotated, TypedDict

import structlog
from langchain_core.messages import BaseMessage, SystemMessage
from langchain_core.runnables import RunnableConfig
from langchain_core.tools import BaseTool
from langchain_openai import ChatOpenAI
from langgraph.graph import END, StateGraph, add_messages
from langgraph.prebuilt import ToolNode

from mapbot.agents.prompts import build_system_prompt
from mapbot.config import Settings

logger = structlog.get_logger(__name__)


class AgentState(TypedDict):
    """State flowing through the agent graph for one turn."""

    # Prior history + the new user message, then AI/tool messages as they happen
    messages: Annotated[list[BaseMessage], add_messages]


def should_continue(state: AgentState) -> str:
    """Route from agent: go to tools if tool_calls, else finish."""
    last_message = state["messages"][-1] if state.get("messages") else None
    if last_message is not None and getattr(last_message, "tool_calls", None):
        return "tools"
    return END


def build_agent_graph(settings: Settings, tools: list[BaseTool]):
    """
    Build and compile the agent graph.

    Compiled once at startup (after the ToolBridge has listed its tools)
    and stored on app.state; each turn streams it with ``astream_events``.

    Args:
        settings: Application settings (model, temperature, endpoint).
        tools:    LangChain tools produced by the ToolBridge.

    Returns:
        Compiled LangGraph ready for async streaming invocation.
    """
    llm = ChatOpenAI(
        model=settings.agent.model,
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        temperature=settings.agent.temperature,
        streaming=True,
    )
    llm_with_tools = llm.bind_tools(tools) if tools else llm
    system_prompt = SystemMessage(content=build_system_prompt([t.name for t in tools]))

    async def agent_node(state: AgentState, config: RunnableConfig) -> dict:
        """LLM step over the system prompt plus the turn's messages."""
        response = await llm_with_tools.ainvoke([system_prompt, *state["messages"]], config)
        return {"messages": [response]}

    graph = StateGraph(AgentState)
    graph.add_node("agent", agent_node)
    graph.add_node("tools", ToolNode(tools))

    graph.set_entry_point("agent")
    graph.add_conditional_edges("agent", should_continue, {"tools": "tools", END: END})
    graph.add_edge("tools", "agent")

    logger.info("agent_graph_built", model=settings.agent.model, tools=len(tools))
    return graph.compile()
