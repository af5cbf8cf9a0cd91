"""MCP interface for feedvault: FastMCP tools over one VaultService."""
