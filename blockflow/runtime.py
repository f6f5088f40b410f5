"""Block runtime boundary: how the worker invokes a node's block logic."""

from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Dict, Protocol, Union

from .contracts import ExecutionContext, WorkflowNode
from .errors import PermanentBlockError

BlockHandler = Callable[
    [WorkflowNode, Dict[str, Any], ExecutionContext], Union[Any, Awaitable[Any]]
]


class BlockRuntime(Protocol):
    """Executes a single workflow node.

    Implementations return the node output, or raise
    ``TransientBlockError``/``PermanentBlockError`` to classify a failure.
    Other exceptions are classified by the retry policy.
    """

    async def execute(
        self, node: WorkflowNode, inputs: Dict[str, Any], context: ExecutionContext
    ) -> Any:
        ...


class BlockRegistry(BlockRuntime):
    """Runtime that dispatches nodes to handlers registered per block type."""

    def __init__(self) -> None:
        self._handlers: Dict[str, BlockHandler] = {}

    def register(self, block_type: str, handler: BlockHandler) -> None:
        self._handlers[block_type] = handler

    def block(self, block_type: str) -> Callable[[BlockHandler], BlockHandler]:
        """Decorator form of :meth:`register`."""

        def decorator(handler: BlockHandler) -> BlockHandler:
            self.register(block_type, handler)
            return handler

        return decorator

    @property
    def block_types(self) -> list[str]:
        return sorted(self._handlers)

    async def execute(
        self, node: WorkflowNode, inputs: Dict[str, Any], context: ExecutionContext
    ) -> Any:
        handler = self._handlers.get(node.type)
        if handler is None:
            raise PermanentBlockError(f"No handler registered for block type: {node.type}")
        result = handler(node, inputs, context)
        if inspect.isawaitable(result):
            result = await result
        return result
