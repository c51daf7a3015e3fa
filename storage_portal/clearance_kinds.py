"""Clearance dispositions.

The ``item_clearances.metadata`` column stores one of these kinds as
``{"type": <tag>, ...}`` with camelCase keys. ``parse_kind`` never raises:
malformed or missing metadata gives ``None`` so listings can skip the record.
A seeding record whose borrow request link cannot be read is still a
seeding record, just without the link.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Union

from storage_portal.errors import PreconditionFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Seeding:
    original_quantity: int
    borrow_request_id: int | None = None
    tag = 'seeding'

    def to_metadata(self) -> dict:
        return {
            'type': self.tag,
            'originalQuantity': self.original_quantity,
            'borrowRequestId': self.borrow_request_id,
        }


@dataclass(frozen=True)
class Damaged:
    tag = 'damaged'

    def to_metadata(self) -> dict:
        return {'type': self.tag}


@dataclass(frozen=True)
class Expired:
    tag = 'expired'

    def to_metadata(self) -> dict:
        return {'type': self.tag}


@dataclass(frozen=True)
class Obsolete:
    tag = 'obsolete'

    def to_metadata(self) -> dict:
        return {'type': self.tag}


@dataclass(frozen=True)
class Recall:
    tag = 'recall'

    def to_metadata(self) -> dict:
        return {'type': self.tag}


@dataclass(frozen=True)
class Other:
    details: dict = field(default_factory=dict)
    tag = 'other'

    def to_metadata(self) -> dict:
        return {**self.details, 'type': self.tag}


ClearanceKind = Union[Seeding, Damaged, Expired, Obsolete, Recall, Other]

_SIMPLE_KINDS = {kind.tag: kind for kind in (Damaged, Expired, Obsolete, Recall)}
KIND_TAGS = ('seeding', *_SIMPLE_KINDS, 'other')


def _as_int(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip('-').isdigit():
        return int(value.strip())
    return None


def parse_kind(metadata) -> ClearanceKind | None:
    if not isinstance(metadata, dict):
        return None
    tag = metadata.get('type')
    if not isinstance(tag, str):
        return None
    tag = tag.strip().lower()

    if tag == Seeding.tag:
        original_quantity = _as_int(metadata.get('originalQuantity', 0))
        if original_quantity is None or original_quantity < 0:
            return None
        raw_borrow_id = metadata.get('borrowRequestId')
        borrow_request_id = _as_int(raw_borrow_id) if raw_borrow_id is not None else None
        if raw_borrow_id is not None and borrow_request_id is None:
            logger.warning('Ignoring unreadable borrowRequestId %r on seeding record', raw_borrow_id)
        return Seeding(original_quantity=original_quantity, borrow_request_id=borrow_request_id)

    if tag in _SIMPLE_KINDS:
        return _SIMPLE_KINDS[tag]()

    if tag == Other.tag:
        return Other(details={key: value for key, value in metadata.items() if key != 'type'})
    return None


def kind_from_tag(tag: str | None) -> ClearanceKind:
    """Kinds a caller may pick when clearing stock by hand."""
    clean = (tag or Other.tag).strip().lower()
    if clean in _SIMPLE_KINDS:
        return _SIMPLE_KINDS[clean]()
    if clean == Other.tag:
        return Other()
    raise PreconditionFailed(f'Unknown clearance type: {tag}')
