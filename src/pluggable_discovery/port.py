"""Port - a communication endpoint found by a discovery

A Port is identified by the pair (address, protocol). Everything else is
descriptive metadata meant for display or for the tool that will later open
the port.

## Wire Format

```json
{
  "address": "/dev/ttyACM0",
  "addressLabel": "ttyACM0",
  "protocol": "serial",
  "protocolLabel": "Serial Port (USB)",
  "hardwareId": "85236303431351F0E1D1",
  "properties": {"vid": "0x2341", "pid": "0x0043"}
}
```

Only `address` is always present. Empty labels, an empty hardware id and
empty properties are omitted, so a "remove" event may carry just the
address and protocol.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Tuple

from jsonschema import Draft7Validator


class InvalidPortError(ValueError):
    """Port data could not be parsed"""
    pass


@dataclass(frozen=True)
class Port:
    """An addressable endpoint reported by a discovery.

    Properties keep their insertion order and are exposed as a read-only
    mapping, so a Port never changes once built.
    """
    address: str
    address_label: str = ""
    protocol: str = ""
    protocol_label: str = ""
    properties: Mapping[str, str] = field(default_factory=dict, hash=False)
    hardware_id: str = ""

    def __post_init__(self):
        object.__setattr__(self, "properties", MappingProxyType(dict(self.properties)))

    @property
    def key(self) -> Tuple[str, str]:
        """Registry identity of this port"""
        return (self.address, self.protocol)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the flat JSON object used on the wire"""
        data: Dict[str, Any] = {"address": self.address}
        if self.address_label:
            data["addressLabel"] = self.address_label
        if self.protocol:
            data["protocol"] = self.protocol
        if self.protocol_label:
            data["protocolLabel"] = self.protocol_label
        if self.hardware_id:
            data["hardwareId"] = self.hardware_id
        if self.properties:
            data["properties"] = dict(self.properties)
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "Port":
        """Build a Port from its wire representation

        Raises:
            InvalidPortError: If the value does not match PORT_SCHEMA
        """
        errors = list(_PORT_VALIDATOR.iter_errors(data))
        if errors:
            raise InvalidPortError("; ".join(e.message for e in errors))

        values = {attr: data.get(wire_name) or "" for wire_name, attr in _STRING_FIELDS}
        return cls(properties=data.get("properties") or {}, **values)

    def __str__(self) -> str:
        return self.address


_STRING_FIELDS = (
    ("address", "address"),
    ("addressLabel", "address_label"),
    ("protocol", "protocol"),
    ("protocolLabel", "protocol_label"),
    ("hardwareId", "hardware_id"),
)

# Wire shape of a port. Missing and null fields read as empty.
PORT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "address": {"type": ["string", "null"]},
        "addressLabel": {"type": ["string", "null"]},
        "protocol": {"type": ["string", "null"]},
        "protocolLabel": {"type": ["string", "null"]},
        "hardwareId": {"type": ["string", "null"]},
        "properties": {
            "type": ["object", "null"],
            "additionalProperties": {"type": "string"},
        },
    },
}

_PORT_VALIDATOR = Draft7Validator(PORT_SCHEMA)
