"""
Entry point for the llama-kv-manager MCP server.

Usage:
    python -m llama_kv_manager
    llama-kv  # If installed via pip
"""

import asyncio
import sys


def main() -> int:
    """Main entry point."""
    from llama_kv_manager.server import run_server

    try:
        asyncio.run(run_server())
        return 0
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
