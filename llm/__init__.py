from .mediator import LLMError, LLMMediator, get_mediator

__all__ = ["LLMError", "LLMMediator", "get_mediator"]
