from .routes_holders import router

__all__ = ["router"]
