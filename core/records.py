# core/records.py

import json
import re
from dataclasses import dataclass
from typing import Optional, Dict, Any, Union

PLANT_TYPE = "plant"


class InvalidDocumentError(ValueError):
    """Raised when a stored document cannot be turned into a record"""


def slugify(name: str) -> str:
    """Natural key shared by catalog entries and documents ("Snake Plant" -> "snake_plant")"""
    return re.sub(r"\s+", "_", name.strip().lower())


@dataclass(frozen=True)
class WateringSchedule:
    frequency: str = ""
    amount: str = ""
    notes: str = ""


@dataclass(frozen=True)
class CareInstructions:
    light: str = ""
    temperature: str = ""
    humidity: str = ""
    fertilizer: str = ""
    pruning: str = ""


@dataclass(frozen=True)
class PlantCharacteristics:
    toxic_to_pets: bool = False
    air_purifying: bool = False
    flowering: bool = False
    difficulty: str = ""


def _details(price: Optional[float], location: Optional[str]) -> str:
    parts = []
    if price is not None:
        parts.append(f"${price:.2f}")
    if location:
        parts.append(location)
    return " - ".join(parts)


@dataclass(frozen=True)
class PlantRecord:
    """A plant identified from the catalog, with its care information"""
    id: str
    name: str
    scientific_name: Optional[str] = None
    price: Optional[float] = None
    location: Optional[str] = None
    watering_schedule: Optional[WateringSchedule] = None
    care_instructions: Optional[CareInstructions] = None
    characteristics: Optional[PlantCharacteristics] = None

    kind = PLANT_TYPE

    @property
    def title(self) -> str:
        return self.name

    @property
    def subtitle(self) -> str:
        return self.scientific_name or ""

    @property
    def details(self) -> str:
        return _details(self.price, self.location)


@dataclass(frozen=True)
class GenericRecord:
    """Any non-plant product stored alongside the plants"""
    id: str
    name: str
    category: Optional[str] = None
    price: Optional[float] = None
    location: Optional[str] = None

    kind = "generic"

    @property
    def title(self) -> str:
        return self.name

    @property
    def subtitle(self) -> str:
        return self.category or ""

    @property
    def details(self) -> str:
        return _details(self.price, self.location)


Record = Union[PlantRecord, GenericRecord]


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise InvalidDocumentError(f"Expected a number, got {value!r}")


def _section(attributes: Dict[str, Any], key: str) -> Optional[Dict[str, Any]]:
    section = attributes.get(key)
    if section is None:
        return None
    if not isinstance(section, dict):
        raise InvalidDocumentError(f"'{key}' must be an object")
    return section


def _plant_from(doc_id: str, name: str, row: Dict[str, Any],
                attributes: Dict[str, Any]) -> PlantRecord:
    watering = _section(attributes, 'wateringSchedule')
    care = _section(attributes, 'careInstructions')
    traits = _section(attributes, 'characteristics')

    return PlantRecord(
        id=doc_id,
        name=name,
        scientific_name=_optional_str(row.get('scientific_name')),
        price=_optional_float(row.get('price')),
        location=_optional_str(row.get('location')),
        watering_schedule=WateringSchedule(
            frequency=str(watering.get('frequency', '')),
            amount=str(watering.get('amount', '')),
            notes=str(watering.get('notes', ''))
        ) if watering is not None else None,
        care_instructions=CareInstructions(
            light=str(care.get('light', '')),
            temperature=str(care.get('temperature', '')),
            humidity=str(care.get('humidity', '')),
            fertilizer=str(care.get('fertilizer', '')),
            pruning=str(care.get('pruning', ''))
        ) if care is not None else None,
        characteristics=PlantCharacteristics(
            toxic_to_pets=bool(traits.get('toxicToPets', False)),
            air_purifying=bool(traits.get('airPurifying', False)),
            flowering=bool(traits.get('flowering', False)),
            difficulty=str(traits.get('difficulty', ''))
        ) if traits is not None else None
    )


def record_from_document(row: Dict[str, Any]) -> Record:
    """
    Build a typed record from a stored document row

    Args:
        row: Column mapping as returned by the record store

    Returns:
        PlantRecord for documents tagged "plant", GenericRecord otherwise
    """
    doc_id = row.get('id')
    name = row.get('name')
    if not doc_id or not name:
        raise InvalidDocumentError(f"Document {doc_id!r} has no name")

    attributes = row.get('attributes') or {}
    if isinstance(attributes, str):
        try:
            attributes = json.loads(attributes)
        except json.JSONDecodeError as e:
            raise InvalidDocumentError(f"Document {doc_id!r} has corrupt attributes: {e}")

    if row.get('type') == PLANT_TYPE:
        return _plant_from(doc_id, name, row, attributes)

    return GenericRecord(
        id=doc_id,
        name=name,
        category=_optional_str(row.get('category')),
        price=_optional_float(row.get('price')),
        location=_optional_str(row.get('location'))
    )
