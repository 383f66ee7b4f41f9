"""Home Assistant discovery and state payloads built from an instrument reading."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    field_serializer,
)

from gqgmc_mqtt.consts import (
    DISCOVERY_EXPIRE_AFTER_SECONDS,
    DISCOVERY_PREFIX,
    SENSOR_OBJECT_ID,
    STATE_PREFIX,
)
from gqgmc_mqtt.errors import InstrumentError
from gqgmc_mqtt.hardware.instrument import InstrumentDriver

logger = logging.getLogger(__name__)

MANUFACTURER = "GQ Electronics"
DEVICE_NAME = "GQ Geiger Counter"

# Serialized untagged: the receiving template sees a bare number/string/bool.
PayloadValue = Union[StrictBool, StrictInt, StrictFloat, StrictStr, None]


class EntityCategory(str, Enum):
    CONFIG = "config"
    DIAGNOSTIC = "diagnostic"


class DeviceInfo(BaseModel):
    identifiers: FrozenSet[str] = Field(default_factory=frozenset)
    manufacturer: str = ""
    name: str = ""
    model: str = ""
    sw_version: str = ""

    model_config = ConfigDict(frozen=True)

    @field_serializer("identifiers")
    def _sorted_identifiers(self, value: FrozenSet[str]) -> List[str]:
        return sorted(value)


class DiscoveryPayload(BaseModel):
    """MQTT discovery document for one Home Assistant entity.

    Optional fields left as None are omitted from the wire form entirely; the
    discovery parser treats an explicit null differently from a missing key.
    """

    name: str
    device: DeviceInfo = Field(default_factory=DeviceInfo)
    unique_id: str
    entity_id: str
    state_topic: str
    expires_after: int = Field(default=0, ge=0)
    entity_category: Optional[EntityCategory] = None
    command_topic: Optional[str] = None
    payload_on: Optional[str] = None
    payload_off: Optional[str] = None
    state_class: Optional[str] = None
    device_class: Optional[str] = None
    native_uom: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("unit_of_measurement", "native_uom"),
        serialization_alias="unit_of_measurement",
    )
    options: Optional[List[str]] = None
    value_template: Optional[str] = None
    suggested_display_precision: Optional[int] = Field(default=None, ge=0, le=255)
    assumed_state: Optional[bool] = None
    attribution: Optional[str] = None
    available: Optional[bool] = None
    entity_picture: Optional[str] = None
    extra_state_attributes: Optional[Dict[str, str]] = None
    has_entity_name: Optional[bool] = None
    should_poll: Optional[bool] = None
    translation_key: Optional[str] = None
    payload_press: Optional[str] = None
    min: Optional[int] = None
    max: Optional[int] = None
    mode: Optional[str] = None
    step: Optional[int] = None
    icon: Optional[str] = None

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


_STATE_OPTIONAL_FIELDS = ("label", "description", "notes")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StatePayload(BaseModel):
    value: PayloadValue = None
    last_seen: datetime = Field(default_factory=_utcnow)
    label: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    def to_wire(self) -> Dict[str, Any]:
        # ``value`` is always present, even as null; the annotations are not.
        unset = {name for name in _STATE_OPTIONAL_FIELDS if getattr(self, name) is None}
        return self.model_dump(mode="json", exclude=unset)


# None is the empty marker; it is never handed to the broker.
Payload = Union[DiscoveryPayload, StatePayload, None]


def encode_payload(payload: Payload) -> bytes:
    """Serialize ``payload`` without a variant tag.

    The variant is chosen by type first, then only that variant's fields are
    written. Discovery and state documents share no required keys, which keeps
    them distinguishable should inbound decoding ever be added.
    """

    if isinstance(payload, DiscoveryPayload):
        document = payload.to_wire()
    elif isinstance(payload, StatePayload):
        document = payload.to_wire()
    elif payload is None:
        raise ValueError("empty payload is never published")
    else:
        raise TypeError(f"unsupported payload type {type(payload).__name__}")
    return json.dumps(document, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


@dataclass(frozen=True)
class CompoundPayload:
    config: DiscoveryPayload
    config_topic: str
    state: StatePayload
    state_topic: str


def discovery_topic(serial: str) -> str:
    return f"{DISCOVERY_PREFIX}/sensor/{serial}/{SENSOR_OBJECT_ID}/config"


def state_topic(serial: str) -> str:
    return f"{STATE_PREFIX}/{serial}/{SENSOR_OBJECT_ID}"


def compose_cpm_payload(model: str, serial: str, cpm: int, *, now: Optional[datetime] = None) -> CompoundPayload:
    """Build the discovery/state pair for one count-rate reading."""

    unit_name = f"{model}-{serial}"
    state_topic_name = state_topic(serial)
    config = DiscoveryPayload(
        name=unit_name,
        unique_id=unit_name,
        entity_id=f"sensor.{serial}_geiger_tube_cpm",
        state_topic=state_topic_name,
        expires_after=DISCOVERY_EXPIRE_AFTER_SECONDS,
        state_class="measurement",
        value_template="{{ value_json.value }}",
        suggested_display_precision=0,
        native_uom="cpm",
        icon="mdi:radioactive",
        device=DeviceInfo(
            identifiers=frozenset({serial}),
            manufacturer=MANUFACTURER,
            name=DEVICE_NAME,
            model=model,
            sw_version="",
        ),
    )
    state = StatePayload(value=int(cpm), last_seen=now or _utcnow())
    return CompoundPayload(
        config=config,
        config_topic=discovery_topic(serial),
        state=state,
        state_topic=state_topic_name,
    )


async def build_payloads(
    driver: InstrumentDriver,
    *,
    clock: Callable[[], datetime] = _utcnow,
) -> List[CompoundPayload]:
    """Query the instrument once and return zero or one compound payloads.

    Any driver error, or a count rate of exactly zero, skips the cycle: the
    result is empty and the next poll interval tries again.
    """

    try:
        model = await driver.get_version()
    except InstrumentError as exc:
        logger.error("Can't get unit version: %s", exc)
        return []
    try:
        serial = await driver.get_serial_number()
    except InstrumentError as exc:
        logger.error("Can't get unit serial: %s", exc)
        return []
    try:
        cpm = await driver.get_cpm()
    except InstrumentError as exc:
        logger.error("Can't get cpm from device: %s", exc)
        return []
    if cpm == 0:
        # Zero is indistinguishable from "not measured yet" on these tubes.
        logger.debug("Instrument %s-%s reported 0 cpm; skipping cycle", model, serial)
        return []

    return [compose_cpm_payload(model, serial, cpm, now=clock())]


__all__ = [
    "CompoundPayload",
    "DeviceInfo",
    "DiscoveryPayload",
    "EntityCategory",
    "Payload",
    "PayloadValue",
    "StatePayload",
    "build_payloads",
    "compose_cpm_payload",
    "discovery_topic",
    "encode_payload",
    "state_topic",
]
