"""
Zero-trust tool authorization.

Every call is re-checked against the provider catalog and the agent's grant;
no decision is cached. Checks run in order and the first failure wins:
existence, deny-list, allow-list, read-only category.
"""

from typing import Iterable, NamedTuple, Optional, Sequence

from ..types import ToolCategory, ToolDefinition

WRITE_CATEGORIES = frozenset(
    {ToolCategory.WRITE, ToolCategory.ADMIN, ToolCategory.DANGEROUS}
)


class ToolAccessDecision(NamedTuple):
    allowed: bool
    reason: Optional[str] = None


def is_tool_allowed(
    tool_name: str,
    *,
    provider_tools: Sequence[ToolDefinition],
    grant_allowed_tools: Optional[Iterable[str]] = None,
    grant_denied_tools: Optional[Iterable[str]] = None,
    grant_read_only: bool = False,
) -> ToolAccessDecision:
    """
    Decide whether ``tool_name`` may be called.

    Args:
        tool_name: Tool id requested by the agent
        provider_tools: The provider's tool catalog
        grant_allowed_tools: Allow-list, None meaning every tool
        grant_denied_tools: Deny-list; always wins over the allow-list
        grant_read_only: Reject write, admin and dangerous tools

    Returns:
        ToolAccessDecision(allowed, reason)
    """
    tool = next((t for t in provider_tools if t.id == tool_name), None)
    if tool is None:
        return ToolAccessDecision(False, f"Tool '{tool_name}' not found")

    if grant_denied_tools is not None and tool_name in set(grant_denied_tools):
        return ToolAccessDecision(False, f"Tool '{tool_name}' is denied for this agent")

    if grant_allowed_tools is not None and tool_name not in set(grant_allowed_tools):
        return ToolAccessDecision(
            False, f"Tool '{tool_name}' is not in the agent's allowed tools"
        )

    if grant_read_only and tool.category in WRITE_CATEGORIES:
        return ToolAccessDecision(
            False,
            f"Tool '{tool_name}' is a {tool.category.value} tool and the grant is read-only",
        )

    return ToolAccessDecision(True)
