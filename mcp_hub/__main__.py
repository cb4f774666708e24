"""Run the hub as an MCP server: ``python -m mcp_hub [project-config]``."""

import asyncio
import os
import sys
from pathlib import Path

from .core import HubServer, MCPHub

DEFAULT_PROJECT_CONFIG = "mcp-hub.yaml"
DEFAULT_GLOBAL_CONFIG = Path("~/.config/mcp-hub/servers.yaml")
GLOBAL_CONFIG_ENV = "MCP_HUB_GLOBAL_CONFIG"


async def main() -> None:
    """Main entry point."""
    project_config = sys.argv[1] if len(sys.argv) > 1 else DEFAULT_PROJECT_CONFIG
    global_config = os.environ.get(GLOBAL_CONFIG_ENV, str(DEFAULT_GLOBAL_CONFIG))

    hub = MCPHub(project_config=project_config, global_config=global_config)
    await HubServer(hub).run()


def run() -> None:
    # stdout is the MCP stream, so diagnostics go to stderr
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutting down MCP hub...", file=sys.stderr)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    run()
