"""
Utility helpers for ChatSafe.

- **logger.py**: Centralized logging configuration with coloured console output
  through prompt_toolkit, a rotating per-session log file, and suppression of
  chatty third-party loggers (web3, aiohttp, openai).
"""
