from .usage import router as usage_router

__all__ = ["usage_router"]
