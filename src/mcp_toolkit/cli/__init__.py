"""Command-line interface for mcp-toolkit."""
