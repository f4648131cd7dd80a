"""Tool implementations behind the MCP server."""
