from .swap_routes import router as swap_routes

__all__ = [
    'swap_routes',
]
