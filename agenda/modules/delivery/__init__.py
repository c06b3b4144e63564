"""Delivery module - one adapter per channel."""

from agenda.modules.delivery.base import DeliveryAdapter, DeliveryMetadata, DeliveryResult, DeliveryRouter

__all__ = ["DeliveryAdapter", "DeliveryMetadata", "DeliveryResult", "DeliveryRouter"]
