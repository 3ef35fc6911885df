from .proxy import proxy_router
from .extractor import extractor_router
from .metadata import metadata_router

__all__ = ["proxy_router", "extractor_router", "metadata_router"]
