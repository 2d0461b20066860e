# =============================================================================
# mymeds_core/offline/draft_payloads.py
# Typed Draft Payloads
# =============================================================================
"""
Draft data is stored opaque; it gets a type only when a draft is resumed
into a form. The id prefix selects the variant:

    ocr_<millis>  ->  OcrDraftPayload   (scanned prescription + photos)
    nfc_<millis>  ->  NfcDraftPayload   (prescription read from an NFC tag)
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Union

from mymeds_core.errors import DraftValidationError

if TYPE_CHECKING:
    from mymeds_core.offline.draft_store import Draft


class DraftType(Enum):
    OCR = "ocr"
    NFC = "nfc"


def draft_type_for(draft_id: str) -> DraftType:
    """Draft type selected by the id prefix."""
    prefix, sep, _ = draft_id.partition("_")
    if sep:
        for draft_type in DraftType:
            if draft_type.value == prefix:
                return draft_type
    raise DraftValidationError(f"Unknown draft type for id '{draft_id}'", draft_id=draft_id)


def _medication_list(draft_id: str, value: Any) -> List[Dict[str, Any]]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, dict) for item in value):
        raise DraftValidationError(
            "medications must be a list of objects",
            draft_id=draft_id,
            field="medications",
        )
    return [dict(item) for item in value]


def _text(draft_id: str, data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise DraftValidationError(f"{key} must be text", draft_id=draft_id, field=key)
    return value


def _check_type_tag(draft_id: str, data: Dict[str, Any], expected: DraftType) -> None:
    tag = data.get("type")
    if tag is not None and tag != expected.value:
        raise DraftValidationError(
            f"Draft is tagged '{tag}' but its id says '{expected.value}'",
            draft_id=draft_id,
            field="type",
        )


@dataclass(frozen=True)
class OcrDraftPayload:
    doctor: str = ""
    diagnosis: str = ""
    medications: List[Dict[str, Any]] = field(default_factory=list)
    image_count: int = 0

    draft_type = DraftType.OCR

    def to_data(self) -> Dict[str, Any]:
        return {
            "type": self.draft_type.value,
            "doctor": self.doctor,
            "diagnosis": self.diagnosis,
            "medications": list(self.medications),
            "image_count": self.image_count,
        }

    @classmethod
    def from_data(cls, draft_id: str, data: Dict[str, Any], image_paths: List[str]) -> OcrDraftPayload:
        _check_type_tag(draft_id, data, DraftType.OCR)
        image_count = data.get("image_count", len(image_paths))
        if not isinstance(image_count, int) or image_count < 0:
            raise DraftValidationError("image_count must be a non-negative integer", draft_id=draft_id, field="image_count")
        return cls(
            doctor=_text(draft_id, data, "doctor"),
            diagnosis=_text(draft_id, data, "diagnosis"),
            medications=_medication_list(draft_id, data.get("medications")),
            image_count=image_count,
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "type": self.draft_type.value,
            "doctor": self.doctor or None,
            "diagnosis": self.diagnosis or None,
            "medication_count": len(self.medications),
            "image_count": self.image_count,
        }


@dataclass(frozen=True)
class NfcDraftPayload:
    prescription: Dict[str, Any]
    medications: List[Dict[str, Any]] = field(default_factory=list)

    draft_type = DraftType.NFC

    @property
    def medication_count(self) -> int:
        return len(self.medications)

    def to_data(self) -> Dict[str, Any]:
        return {
            "type": self.draft_type.value,
            "prescription": dict(self.prescription),
            "medications": list(self.medications),
            "medication_count": self.medication_count,
        }

    @classmethod
    def from_data(cls, draft_id: str, data: Dict[str, Any], image_paths: List[str]) -> NfcDraftPayload:
        _check_type_tag(draft_id, data, DraftType.NFC)
        prescription = data.get("prescription")
        if not isinstance(prescription, dict):
            raise DraftValidationError(
                "NFC drafts need the prescription read from the tag",
                draft_id=draft_id,
                field="prescription",
            )
        if image_paths:
            raise DraftValidationError("NFC drafts carry no images", draft_id=draft_id, field="image_paths")
        return cls(
            prescription=dict(prescription),
            medications=_medication_list(draft_id, data.get("medications")),
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "type": self.draft_type.value,
            "doctor": self.prescription.get("doctor"),
            "diagnosis": self.prescription.get("diagnosis"),
            "medication_count": self.medication_count,
            "image_count": 0,
        }


DraftPayload = Union[OcrDraftPayload, NfcDraftPayload]

PAYLOAD_TYPES = {
    DraftType.OCR: OcrDraftPayload,
    DraftType.NFC: NfcDraftPayload,
}


def parse_draft_payload(draft: Draft) -> DraftPayload:
    """
    Validate a stored draft at the point it is resumed into a form.

    Raises:
        DraftValidationError: unknown prefix or data that does not fit its variant
    """
    draft_type = draft_type_for(draft.id)
    return PAYLOAD_TYPES[draft_type].from_data(draft.id, draft.data, draft.image_paths)
