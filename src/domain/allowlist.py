"""Allow-list gate - owner-maintained set of approved reference measurements."""

from dataclasses import dataclass

from .admin import AdminService
from .exceptions import MalformedInput, NotFound
from .measurement import normalize_digest_hex
from .models import RegistryEvent
from .ports import EventSink, RegistryRepository


@dataclass
class MeasurementAllowList:
    repository: RegistryRepository
    admin: AdminService
    events: EventSink

    def approve(self, caller: str, digest_hex: str) -> str:
        """
        Approve a reference measurement. Idempotent.

        Raises:
            NotOwner: caller is not the owner
            MalformedInput: digest is not 48 bytes of hex
        """
        self.admin.require_owner(caller)
        measurement = normalize_digest_hex(digest_hex)
        self.repository.add_measurement(measurement)
        self.events.emit(RegistryEvent("measurement_approved", {"measurement": measurement}))
        return measurement

    def revoke(self, caller: str, digest_hex: str) -> str:
        """
        Remove a reference measurement.

        Raises:
            NotOwner: caller is not the owner
            MalformedInput: digest is not 48 bytes of hex
            NotFound: measurement was not approved
        """
        self.admin.require_owner(caller)
        measurement = normalize_digest_hex(digest_hex)
        if not self.repository.remove_measurement(measurement):
            raise NotFound(measurement)
        self.events.emit(RegistryEvent("measurement_removed", {"measurement": measurement}))
        return measurement

    def contains(self, digest_hex: str) -> bool:
        try:
            measurement = normalize_digest_hex(digest_hex)
        except MalformedInput:
            return False
        return self.repository.has_measurement(measurement)

    def measurements(self) -> list[str]:
        return self.repository.list_measurements()
