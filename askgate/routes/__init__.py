"""HTTP routers mounted under API_PREFIX by askgate.main."""
from askgate.routes.ask import router as ask_router
from askgate.routes.customers import router as customers_router

__all__ = ["ask_router", "customers_router"]
