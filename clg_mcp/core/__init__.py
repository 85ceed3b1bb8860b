"""
CLG MCP core package: envelopes, authentication, dispatch, sessions and the HTTP server.
"""
