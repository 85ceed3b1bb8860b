"""
CLG MCP Tools package initialization.
This module provides the tool catalog and the resource providers behind it.
"""

from clg_mcp.tools.catalog import DEFAULT_TOOLS, ToolCatalog, ToolDescriptor, ToolName
from clg_mcp.tools.provider import HttpResourceProvider, ResourceProvider, StaticResourceProvider, create_provider

__all__ = [
    "DEFAULT_TOOLS",
    "ToolCatalog",
    "ToolDescriptor",
    "ToolName",
    "ResourceProvider",
    "StaticResourceProvider",
    "HttpResourceProvider",
    "create_provider",
]
