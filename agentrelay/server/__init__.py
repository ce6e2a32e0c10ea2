from agentrelay.server.app import RelayContext, create_app

__all__ = [
    "RelayContext",
    "create_app",
]
