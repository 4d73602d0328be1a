from .precision_search import router as precision_search_router

__all__ = [
    'precision_search_router',
]
