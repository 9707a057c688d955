"""
llama-kv-manager - Persist and restore llama.cpp conversations with their KV cache.

Saves chat messages together with the server's per-slot KV cache and the
runtime configuration needed to reproduce it, and restores them into a
running llama-server, restarting it when its configuration has drifted.
"""

__version__ = "0.3.0"

from llama_kv_manager.config import Config, Settings

__all__ = [
    "__version__",
    "Config",
    "Settings",
]
