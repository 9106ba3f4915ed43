"""netdeploy - intent-driven network configuration deployment.

Renders device configuration from intent, validates it, deploys it under
per-device serialization, verifies it, and rolls back on failure.
"""

__version__ = "0.1.0"
