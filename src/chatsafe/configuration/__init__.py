"""
Configuration management for ChatSafe.

- **app_configuration.py**: YAML loader for tuning knobs (timeouts, warning
  template, concurrency limits, reconnect budget, database path). Falls back
  to defaults on a missing or malformed file.

- **environment.py**: Reads secrets and endpoints from ``.env`` / the process
  environment and validates the ones the agent cannot start without.
"""
