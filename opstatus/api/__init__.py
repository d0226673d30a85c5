from .status_server import StatusServer, create_status_app

__all__ = ["StatusServer", "create_status_app"]
