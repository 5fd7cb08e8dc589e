"""HTTP-facing parts of the broker: OAuth endpoints and the MCP server."""
