"""Default settings for incremental-flow-engine.

Maps to keys in config.example.yaml. Override via config.local.yaml.
"""

from pathlib import Path

from platformdirs import user_state_dir

# Platform-appropriate state directory (resolved by platformdirs)
state_dir = Path(user_state_dir("incremental-flow-engine"))

# Server defaults
server_host = "127.0.0.1"
server_port = 9848

# Execution defaults
execution_max_concurrent = 8

# Live update default, for imports without their own refresh interval
live_refresh_interval = 60.0
