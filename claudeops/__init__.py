"""Claude Code usage accounting: log parsing, pricing, live sessions, SQLite storage, tasks and an MCP server."""

__version__ = "1.0.0"

__all__ = ["breakdowns", "live", "mcpserver", "parser", "pricing", "store", "tasks"]