from .registry import Handler, HandlerContext, HandlerRegistry, load_handler_modules, registry

__all__ = [
    "Handler",
    "HandlerContext",
    "HandlerRegistry",
    "load_handler_modules",
    "registry",
]
