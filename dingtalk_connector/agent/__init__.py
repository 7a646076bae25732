"""Agent-side collaborators: routing and reply dispatch."""

from dingtalk_connector.agent.runtime import (
    AgentRoute,
    AgentRuntime,
    BusAgentRuntime,
    Peer,
    StaticRouter,
    echo_agent,
    load_agent,
)

__all__ = [
    "AgentRoute",
    "AgentRuntime",
    "BusAgentRuntime",
    "Peer",
    "StaticRouter",
    "echo_agent",
    "load_agent",
]
