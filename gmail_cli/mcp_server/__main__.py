"""
MCP Server main entry point.

Run with: python -m gmail_cli.mcp_server

Starts the FastMCP server with stdio transport so an agent host can launch
it as a subprocess.
"""

from .server import mcp

if __name__ == "__main__":
    mcp.run(transport="stdio")
