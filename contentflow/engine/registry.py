"""
Node Registry for the Workflow Engine.

Maps each node type tag to its behavior: the input/output port schemas,
a pydantic settings schema and the coroutine that executes the node.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Type
from dataclasses import dataclass, field
from copy import deepcopy
import asyncio
import logging

from pydantic import BaseModel, ValidationError

from contentflow.engine.graph import Node, NodeType, Port
from contentflow.errors import NodeSettingsError, UnregisteredNodeType


logger = logging.getLogger(__name__)

Handler = Callable[..., Awaitable[Dict[str, Any]]]


def _format_validation_error(error: ValidationError) -> List[str]:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "settings"
        messages.append(f"{location}: {item.get('msg')}")
    return messages


@dataclass
class NodeBehavior:
    """
    The execution behavior of one node type.

    Attributes:
        type_tag: The node type this behavior implements
        handler: ``async def handler(inputs, settings, capabilities, ctx) -> outputs``
        input_schema: Input ports, in order
        output_schema: Output ports, in order
        settings_schema: Pydantic model the node's settings must satisfy
        description: Human-readable description
    """

    type_tag: str
    handler: Handler
    input_schema: List[Port] = field(default_factory=list)
    output_schema: List[Port] = field(default_factory=list)
    settings_schema: Type[BaseModel] = BaseModel
    description: str = ""

    def __post_init__(self):
        if not asyncio.iscoroutinefunction(self.handler):
            raise ValueError(f"Handler for node type '{self.type_tag}' must be async")

    def validate_settings(self, settings: Optional[Dict[str, Any]]) -> BaseModel:
        """Parse settings into the schema model, raising NodeSettingsError."""
        try:
            return self.settings_schema.model_validate(settings or {})
        except ValidationError as e:
            raise NodeSettingsError(
                f"Invalid settings for '{self.type_tag}': "
                + "; ".join(_format_validation_error(e))
            ) from e

    def settings_errors(self, settings: Optional[Dict[str, Any]]) -> List[str]:
        """All settings problems as messages (empty when valid)."""
        try:
            self.settings_schema.model_validate(settings or {})
        except ValidationError as e:
            return _format_validation_error(e)
        return []

    async def execute(
        self,
        inputs: Dict[str, Any],
        settings: Dict[str, Any],
        capabilities,
        ctx,
    ) -> Dict[str, Any]:
        """
        Run the node.

        Returns:
            Outputs keyed by output port name

        Raises:
            NodeSettingsError: If settings do not validate (never retried)
        """
        parsed = self.validate_settings(settings)
        result = await self.handler(inputs, parsed, capabilities, ctx)
        if not isinstance(result, dict):
            raise ValueError(
                f"Node type '{self.type_tag}' handler must return a dict, "
                f"got {type(result).__name__}"
            )
        missing = [p.name for p in self.output_schema if p.name not in result]
        if missing:
            raise ValueError(
                f"Node type '{self.type_tag}' did not produce outputs: {missing}"
            )
        return {p.name: result[p.name] for p in self.output_schema}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type_tag,
            "description": self.description,
            "inputs": [p.to_dict() for p in self.input_schema],
            "outputs": [p.to_dict() for p in self.output_schema],
            "settings_schema": self.settings_schema.model_json_schema(),
        }


class NodeRegistry:
    """
    Registry of node behaviors keyed by type tag.

    Usage:
        registry = NodeRegistry()

        @registry.behavior(NodeType.FORMAT, inputs=[...], outputs=[...],
                           settings=FormatSettings)
        async def format_node(inputs, settings, capabilities, ctx):
            return {"formatted": ...}

        behavior = registry.resolve("format")
    """

    def __init__(self):
        self._behaviors: Dict[str, NodeBehavior] = {}

    def register(self, behavior: NodeBehavior) -> NodeBehavior:
        tag = NodeType(behavior.type_tag).value
        if tag in self._behaviors:
            raise ValueError(f"Node type '{tag}' is already registered")
        behavior.type_tag = tag
        self._behaviors[tag] = behavior
        logger.debug(f"Registered node type: {tag}")
        return behavior

    def behavior(
        self,
        type_tag: NodeType,
        inputs: Optional[List[Port]] = None,
        outputs: Optional[List[Port]] = None,
        settings: Type[BaseModel] = BaseModel,
        description: str = "",
    ) -> Callable[[Handler], Handler]:
        """Decorator registering an async handler as a node behavior."""
        def decorator(func: Handler) -> Handler:
            self.register(NodeBehavior(
                type_tag=NodeType(type_tag).value,
                handler=func,
                input_schema=list(inputs or []),
                output_schema=list(outputs or []),
                settings_schema=settings,
                description=(description or func.__doc__ or "").strip(),
            ))
            return func

        return decorator

    def resolve(self, type_tag: str) -> NodeBehavior:
        """Get the behavior for a type tag, raising UnregisteredNodeType."""
        behavior = self._behaviors.get(str(getattr(type_tag, "value", type_tag)))
        if behavior is None:
            raise UnregisteredNodeType(str(getattr(type_tag, "value", type_tag)))
        return behavior

    def has(self, type_tag: str) -> bool:
        return str(getattr(type_tag, "value", type_tag)) in self._behaviors

    def create_node(
        self,
        node_id: str,
        type_tag: str,
        settings: Optional[Dict[str, Any]] = None,
        label: str = "",
        **kwargs: Any,
    ) -> Node:
        """Build a node with the behavior's ports and default-completed settings."""
        behavior = self.resolve(type_tag)
        parsed = behavior.validate_settings(settings)
        return Node(
            node_id=node_id,
            node_type=behavior.type_tag,
            inputs=deepcopy(behavior.input_schema),
            outputs=deepcopy(behavior.output_schema),
            settings=parsed.model_dump(mode="json"),
            label=label,
            **kwargs,
        )

    def list_behaviors(self) -> List[Dict[str, Any]]:
        return [b.to_dict() for b in self._behaviors.values()]

    def __contains__(self, type_tag: str) -> bool:
        return self.has(type_tag)

    def __len__(self) -> int:
        return len(self._behaviors)

    def __iter__(self):
        return iter(self._behaviors.values())
