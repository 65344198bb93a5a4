from specflow.handlers.phases import (
    analyze_handler,
    init_handler,
    plan_handler,
    publish_handler,
    verify_handler,
)
from specflow.handlers.registry import Collaborators, Handler, HandlerRegistry, SessionHandle
from specflow.handlers.task_steps import fix_handler, implement_handler, review_handler

__all__ = [
    "Collaborators",
    "Handler",
    "HandlerRegistry",
    "SessionHandle",
    "create_default_registry",
]


def create_default_registry() -> HandlerRegistry:
    registry = HandlerRegistry()
    registry.register("init", init_handler)
    registry.register("analyze", analyze_handler)
    registry.register("plan", plan_handler)
    registry.register("implement", implement_handler)
    registry.register("review", review_handler)
    registry.register("fix", fix_handler)
    registry.register("verify", verify_handler)
    registry.register("publish", publish_handler)
    return registry
