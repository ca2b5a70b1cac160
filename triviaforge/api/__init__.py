from triviaforge.api.forge import router as forge_router
from triviaforge.api.health import router as health_router
from triviaforge.api.identifiers import router as identifiers_router
from triviaforge.api.mint import router as mint_router

__all__ = [
    "forge_router",
    "health_router",
    "identifiers_router",
    "mint_router",
]
