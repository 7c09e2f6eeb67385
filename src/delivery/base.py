"""
Module to contain base class for Delivery channels
"""
import inspect
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Union

from core.entities import PublishedEvent


class DeliveryChannel(ABC):
    """
    Base interface for all delivery channels.
    """

    name: str

    @abstractmethod
    async def deliver(self, *, event: PublishedEvent) -> None:
        """
        Deliver one published item.
        Must raise exceptions on failure (handled upstream).
        """
        raise NotImplementedError


PublishCallback = Callable[[PublishedEvent], Union[None, Awaitable[Any]]]


class CallbackDelivery(DeliveryChannel):
    """
    Hands each published item to a plain or async function, e.g. a UI hook.
    """

    name = "callback"

    def __init__(self, callback: PublishCallback):
        self.callback = callback

    async def deliver(self, *, event: PublishedEvent) -> None:
        result = self.callback(event)
        if inspect.isawaitable(result):
            await result
