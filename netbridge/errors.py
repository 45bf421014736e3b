class BridgeError(RuntimeError):
    """Raised when a host call is rejected before or after reaching the engine."""
