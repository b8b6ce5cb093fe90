"""
Fake Implementations for Testing

In-memory tracked entities and their source, a scripted delivery
contract, an in-process lease and controllable clocks.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from changedetect.core.domain.contracts import DeliveryContract, EntitySource
from changedetect.core.domain.entities import TrackedEntity, id_sort_key
from changedetect.core.enums import Disposition
from changedetect.infrastructure.database.repositories.delivery_target import DeliveryTargetRepository
from changedetect.services.registry import EntityRegistry

# ======================== FAKE ENTITIES ========================

class WeatherStation(TrackedEntity):
    """Station whose composite covers its anemometers and windvane."""

    entity_type = "weather_station"
    hash_attributes = ("name", "location", "status")
    hash_dependencies = ("anemometers", "windvane")

    def __init__(self, id: int, name: str, location: str = "", status: str = "active"):
        self.id = id
        self.name = name
        self.location = location
        self.status = status
        self.anemometers: List["Anemometer"] = []
        self.windvane: Optional["Windvane"] = None

    @classmethod
    def tracking_scope(cls):
        return lambda station: station.status != "retired"

class Anemometer(TrackedEntity):
    entity_type = "anemometer"
    hash_attributes = ("serial", "max_speed")
    hash_parents = ("station",)

    def __init__(self, id: int, serial: str, max_speed: float = 0.0, station: Optional[WeatherStation] = None):
        self.id = id
        self.serial = serial
        self.max_speed = max_speed
        self.station = station

class Windvane(TrackedEntity):
    entity_type = "windvane"
    hash_attributes = ("direction",)
    hash_parents = ("station",)

    def __init__(self, id: int, direction: str, station: Optional[WeatherStation] = None):
        self.id = id
        self.direction = direction
        self.station = station

class Node(TrackedEntity):
    """Generic graph node for chain and cycle tests."""

    entity_type = "node"
    hash_attributes = ("label",)
    hash_dependencies = ("children",)
    hash_parents = ("parent",)

    def __init__(self, id: int, label: str):
        self.id = id
        self.label = label
        self.children: List["Node"] = []
        self.parent: Optional["Node"] = None

    def adopt(self, child: "Node") -> "Node":
        self.children.append(child)
        child.parent = self
        return child

class Bare(TrackedEntity):
    """Declares nothing to hash."""

    entity_type = "bare"

    def __init__(self, id: int):
        self.id = id

# ======================== FAKE SOURCE ========================

class InMemoryEntitySource(EntitySource):
    def __init__(self, world: "InMemoryWorld", entity_type: str):
        self.world = world
        self.entity_type = entity_type

    def _live(self) -> Dict[str, TrackedEntity]:
        return self.world.entities[self.entity_type]

    def fetch_page(self, session, after_id: Optional[str], limit: int) -> List[TrackedEntity]:
        ordered = sorted(self._live().values(), key=lambda entity: id_sort_key(entity.entity_id))
        if after_id is not None:
            ordered = [e for e in ordered if id_sort_key(e.entity_id) > id_sort_key(after_id)]
        return ordered[:limit]

    def get_many(self, session, ids: Sequence[str]) -> Dict[str, TrackedEntity]:
        live = self._live()
        return {str(i): live[str(i)] for i in ids if str(i) in live}

    def soft_deleted(self, session, ids: Sequence[str]) -> Dict[str, datetime]:
        deleted = self.world.deleted_at[self.entity_type]
        return {str(i): deleted[str(i)] for i in ids if str(i) in deleted}

class InMemoryWorld:
    """Live and soft-deleted entities keyed by type and string id."""

    def __init__(self):
        self.entities: Dict[str, Dict[str, TrackedEntity]] = defaultdict(dict)
        self.deleted_at: Dict[str, Dict[str, datetime]] = defaultdict(dict)

    def add(self, entity: TrackedEntity) -> TrackedEntity:
        self.entities[entity.entity_type][str(entity.entity_id)] = entity
        return entity

    def station(self, id: int, name: str, **kwargs) -> WeatherStation:
        return self.add(WeatherStation(id, name, **kwargs))

    def anemometer(self, station: WeatherStation, id: int, serial: str, max_speed: float = 0.0) -> Anemometer:
        sensor = Anemometer(id, serial, max_speed, station=station)
        station.anemometers.append(sensor)
        return self.add(sensor)

    def windvane(self, station: WeatherStation, id: int, direction: str) -> Windvane:
        vane = Windvane(id, direction, station=station)
        station.windvane = vane
        return self.add(vane)

    def remove(self, entity: TrackedEntity) -> None:
        """Hard delete: gone from the source and detached from its station."""
        self.entities[entity.entity_type].pop(str(entity.entity_id), None)
        station = getattr(entity, "station", None)
        if station is not None:
            if entity in station.anemometers:
                station.anemometers.remove(entity)
            if station.windvane is entity:
                station.windvane = None

    def soft_delete(self, entity: TrackedEntity, at: datetime) -> None:
        """Gone from the source but still reachable through relations."""
        self.entities[entity.entity_type].pop(str(entity.entity_id), None)
        self.deleted_at[entity.entity_type][str(entity.entity_id)] = at

    def source(self, entity_type: str) -> InMemoryEntitySource:
        return InMemoryEntitySource(self, entity_type)

    def registry(self) -> EntityRegistry:
        registry = EntityRegistry()
        for entity_type in ("weather_station", "anemometer", "windvane", "node", "bare"):
            registry.register(self.source(entity_type))
        return registry

# ======================== FAKE CONTRACT ========================

class StubDeliveryContract(DeliveryContract):
    """
    Scripted delivery target.

    Each ``deliver`` call consumes the next script item: True/False is
    returned, an exception is raised. An empty script delivers.
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        script: Optional[List[Any]] = None,
        dispositions: Optional[Dict[type, Disposition]] = None
    ):
        super().__init__(config)
        self.script = list(script or [])
        self.dispositions = dispositions or {}
        self.publish_filter = None
        self.calls: List[str] = []
        self.delivered: List[Dict[str, Any]] = []

    def should_publish(self, entity: TrackedEntity) -> bool:
        return self.publish_filter(entity) if self.publish_filter else True

    def deliver(self, entity: TrackedEntity, payload: Any) -> bool:
        self.calls.append(str(entity.entity_id))
        outcome = self.script.pop(0) if self.script else True
        if isinstance(outcome, Exception):
            raise outcome
        if outcome:
            self.delivered.append(payload)
        return outcome

    def classify_exception(self, exc: Exception) -> Disposition:
        return self.dispositions.get(type(exc), Disposition.DEFER_RECORD)

def add_target(session, contracts, contract: DeliveryContract, name: str = "stub",
               entity_type: str = "weather_station", config: Optional[Dict[str, Any]] = None):
    """Register ``contract`` under ``name`` and create an active target using it.

    The target config reaches the contract through the registry, as it would in production.
    """
    def factory(config):
        contract.config = config
        return contract

    contracts.register(name, factory)
    target = DeliveryTargetRepository(session).create(name, entity_type, name, config or {})
    session.commit()
    return target

# ======================== FAKE INFRASTRUCTURE ========================

class InMemoryLease:
    def __init__(self, busy: bool = False):
        self.busy = busy
        self.held = False
        self.acquired = 0
        self.renewed = 0
        self.released = 0

    def acquire(self) -> bool:
        if self.busy or self.held:
            return False
        self.held = True
        self.acquired += 1
        return True

    def renew(self) -> bool:
        self.renewed += 1
        return self.held

    def release(self) -> bool:
        was_held = self.held
        self.held = False
        self.released += 1
        return was_held

class FrozenClock:
    """Naive UTC wall clock that only moves when told to."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2025, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

class SteppingMonotonic:
    """Monotonic clock that moves ``step`` seconds on every reading."""

    def __init__(self, step: float = 0.0):
        self.value = 0.0
        self.step = step

    def __call__(self) -> float:
        current = self.value
        self.value += self.step
        return current

class RecordingSleep:
    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
