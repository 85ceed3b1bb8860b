"""
CLG MCP Server: genealogy resource tools over JSON-RPC and Server-Sent Events.
"""

__version__ = "1.0.0"
