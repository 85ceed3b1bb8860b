"""
CLG MCP error handling package.
"""
