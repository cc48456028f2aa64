"""Vendor registry: maps a vendor id to its descriptor and automation factory."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from .amazon import AMAZON, AmazonVendor
from .base import VendorAutomation, VendorDescriptor

__all__ = ["UnknownVendorError", "VendorRegistry", "RegisteredVendor", "default_registry"]

VendorFactory = Callable[..., VendorAutomation]


class UnknownVendorError(KeyError):
    def __init__(self, vendor_id: str) -> None:
        self.vendor_id = vendor_id
        super().__init__(vendor_id)

    def __str__(self) -> str:
        return f"unknown vendor: {self.vendor_id}"


@dataclass(frozen=True)
class RegisteredVendor:
    descriptor: VendorDescriptor
    factory: VendorFactory


class VendorRegistry:
    def __init__(self) -> None:
        self._vendors: Dict[str, RegisteredVendor] = {}

    def register(self, descriptor: VendorDescriptor, factory: VendorFactory) -> None:
        if descriptor.id in self._vendors:
            raise ValueError(f"vendor already registered: {descriptor.id}")
        self._vendors[descriptor.id] = RegisteredVendor(descriptor=descriptor, factory=factory)

    def __contains__(self, vendor_id: object) -> bool:
        return vendor_id in self._vendors

    def get(self, vendor_id: str) -> RegisteredVendor:
        try:
            return self._vendors[vendor_id]
        except KeyError:
            raise UnknownVendorError(vendor_id) from None

    def ids(self) -> List[str]:
        return list(self._vendors)

    def descriptors(self) -> List[VendorDescriptor]:
        return [entry.descriptor for entry in self._vendors.values()]

    def create(self, vendor_id: str, **dependencies: Any) -> VendorAutomation:
        entry = self.get(vendor_id)
        return entry.factory(entry.descriptor, **dependencies)


def default_registry() -> VendorRegistry:
    registry = VendorRegistry()
    registry.register(AMAZON, AmazonVendor)
    return registry
