"""Sweep loops.

Both loops stop when ``shutdown_event`` is set (SIGTERM / SIGINT); every
step is durable, so stopping mid-iteration loses nothing.
"""

import threading

# Global shutdown event for graceful termination
shutdown_event = threading.Event()
