"""Action executor interfaces and the handler registry."""

from __future__ import annotations

import abc
import logging
from typing import Any, Dict, Mapping, Optional, Protocol, Union

from ..contracts import ActionType
from ..errors import ActionExecutionError

logger = logging.getLogger(__name__)

MetadataPatch = Dict[str, Any]


class ActionExecutor(Protocol):
    """Performs the side effect named by an action step.

    Returns a metadata patch merged into the enrollment, or raises
    ``ActionExecutionError``.
    """

    async def execute(
        self, action_type: ActionType, config: Mapping[str, Any], contact_id: str
    ) -> MetadataPatch:
        ...


class ContactAttributeProvider(Protocol):
    """Supplies contact attributes to condition evaluation."""

    async def get_attributes(self, contact_id: str) -> Dict[str, Any]:
        ...


class StaticAttributeProvider:
    """Attribute provider backed by a dictionary."""

    def __init__(self, attributes: Optional[Mapping[str, Mapping[str, Any]]] = None) -> None:
        self._attributes: Dict[str, Dict[str, Any]] = {
            k: dict(v) for k, v in (attributes or {}).items()
        }

    def set(self, contact_id: str, **attributes: Any) -> None:
        self._attributes.setdefault(contact_id, {}).update(attributes)

    async def get_attributes(self, contact_id: str) -> Dict[str, Any]:
        return dict(self._attributes.get(contact_id, {}))


class ActionHandler(metaclass=abc.ABCMeta):
    """Handler for one or more action types."""

    @abc.abstractmethod
    async def execute(
        self, action_type: ActionType, config: Mapping[str, Any], contact_id: str
    ) -> MetadataPatch:
        raise NotImplementedError


class ActionRegistry:
    """Maps each ``ActionType`` to its handler.

    Handlers are bound once, when the engine is assembled; executing an
    unregistered action type fails without retry.
    """

    def __init__(
        self, handlers: Optional[Mapping[Union[ActionType, str], ActionHandler]] = None
    ) -> None:
        self._handlers: Dict[ActionType, ActionHandler] = {}
        for action_type, handler in (handlers or {}).items():
            self.register(action_type, handler)

    def register(self, action_type: Union[ActionType, str], handler: ActionHandler) -> None:
        self._handlers[ActionType(action_type)] = handler

    def registered(self) -> frozenset[ActionType]:
        return frozenset(self._handlers)

    def __contains__(self, action_type: object) -> bool:
        return action_type in self._handlers

    async def execute(
        self, action_type: ActionType, config: Mapping[str, Any], contact_id: str
    ) -> MetadataPatch:
        handler = self._handlers.get(action_type)
        if handler is None:
            raise ActionExecutionError(
                f"No handler registered for action {getattr(action_type, 'value', action_type)}",
                retryable=False,
            )
        patch = await handler.execute(action_type, config, contact_id)
        return dict(patch or {})
