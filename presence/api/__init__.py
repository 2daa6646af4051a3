from .server import build_service, create_app, run_api_server

__all__ = ["build_service", "create_app", "run_api_server"]
