"""GATT attribute lookup for the scooter service."""

from __future__ import annotations

from collections.abc import Iterable

from rebelride.core.errors import CharacteristicNotFoundError, ServiceNotFoundError
from rebelride.core.model import AttributeSet, DiscoveredService

SERVICE_UUID = "00002c00-0000-1000-8000-00805f9b34fb"
CHAR_WRITE_UUID = "00002c01-0000-1000-8000-00805f9b34fb"
CHAR_NOTIFY_UUID = "00002c03-0000-1000-8000-00805f9b34fb"


def _find_service(topology: Iterable[DiscoveredService], uuid: str) -> DiscoveredService | None:
    for service in topology:
        if service.uuid.lower() == uuid:
            return service
    return None


def _has_characteristic(service: DiscoveredService, uuid: str) -> bool:
    return any(char.lower() == uuid for char in service.characteristics)


def resolve_attributes(
    topology: Iterable[DiscoveredService],
    *,
    service_uuid: str = SERVICE_UUID,
    write_char_uuid: str = CHAR_WRITE_UUID,
    notify_char_uuid: str = CHAR_NOTIFY_UUID,
) -> AttributeSet:
    service = _find_service(topology, service_uuid.lower())
    if service is None:
        raise ServiceNotFoundError(service_uuid)

    if not _has_characteristic(service, write_char_uuid.lower()):
        raise CharacteristicNotFoundError("write", write_char_uuid)
    if not _has_characteristic(service, notify_char_uuid.lower()):
        raise CharacteristicNotFoundError("notify", notify_char_uuid)

    return AttributeSet(
        service_uuid=service_uuid.lower(),
        write_char_uuid=write_char_uuid.lower(),
        notify_char_uuid=notify_char_uuid.lower(),
    )


def describe_topology(topology: Iterable[DiscoveredService]) -> list[str]:
    services = list(topology)
    lines = [f"Found {len(services)} services:"]
    for service in services:
        lines.append(f"Service: {service.uuid}")
        lines.extend(f"  Characteristic: {char}" for char in service.characteristics)
    return lines
