"""
Template Snapshot Manager.

Freezes an inspection template into the write-once blob stored on
``InspectionInstance.snapshot`` and reads it back.

═══ Blob format ═══════════════════════════════════════════════════════

    {
      "schema_version": 1,
      "captured_at": "2026-03-02T09:00:00+00:00",
      "template": {"id", "name", "description", "activity_type"},
      "items": [
        {"id", "sequence_number", "description", "point_type",
         "responsible_party", "evidence_required",
         "acceptance_criteria", "test_type"},
        ...
      ]
    }

Blobs written before versioning (no ``schema_version`` key, camelCase
fields, items under ``checklistItems``) are read as version 0.

═══ Read sources ══════════════════════════════════════════════════════

    snapshot        the instance carries a blob → always used
    live_template   the instance predates snapshotting (blob is NULL) →
                    the live template is read instead and the view is
                    flagged ``snapshot_source = "live_template"``
"""

import logging
from dataclasses import dataclass, field

from siteqa.models.inspection import InspectionInstance, InspectionTemplate
from siteqa.utils.helpers import utcnow

logger = logging.getLogger(__name__)

SNAPSHOT_SCHEMA_VERSION = 1

SOURCE_SNAPSHOT = "snapshot"
SOURCE_LIVE_TEMPLATE = "live_template"

_ITEM_FIELDS = (
    "id", "sequence_number", "description", "point_type", "responsible_party",
    "evidence_required", "acceptance_criteria", "test_type",
)


@dataclass
class SnapshotView:
    template: dict
    items: list = field(default_factory=list)
    source: str = SOURCE_SNAPSHOT
    schema_version: int | None = SNAPSHOT_SCHEMA_VERSION
    captured_at: str | None = None

    def item(self, item_id: int) -> dict | None:
        for it in self.items:
            if it["id"] == item_id:
                return it
        return None

    def items_before(self, sequence_number: int) -> list[dict]:
        return [it for it in self.items if it["sequence_number"] < sequence_number]

    def filtered(self, responsible_party: str | None) -> "SnapshotView":
        if not responsible_party:
            return self
        return SnapshotView(
            template=self.template,
            items=[it for it in self.items if it.get("responsible_party") == responsible_party],
            source=self.source,
            schema_version=self.schema_version,
            captured_at=self.captured_at,
        )

    def to_dict(self):
        return {
            "schema_version": self.schema_version,
            "captured_at": self.captured_at,
            "snapshot_source": self.source,
            "template": self.template,
            "items": [with_point_flags(it) for it in self.items],
        }


# ── Write ────────────────────────────────────────────────────────────────────

def build_snapshot(template: InspectionTemplate) -> dict:
    """Serialise *template* and its current items into a new blob."""
    items = sorted(template.items, key=lambda i: (i.sequence_number, i.id))
    return {
        "schema_version": SNAPSHOT_SCHEMA_VERSION,
        "captured_at": utcnow().isoformat(),
        "template": {
            "id": template.id,
            "name": template.name,
            "description": template.description or "",
            "activity_type": template.activity_type,
        },
        "items": [{f: getattr(i, f) for f in _ITEM_FIELDS} for i in items],
    }


# ── Read ─────────────────────────────────────────────────────────────────────

def _read_v0(blob: dict) -> SnapshotView:
    items = [
        {
            "id": it.get("id"),
            "sequence_number": it.get("sequenceNumber", 0),
            "description": it.get("description", ""),
            "point_type": it.get("pointType", "standard"),
            "responsible_party": it.get("responsibleParty"),
            "evidence_required": it.get("evidenceRequired"),
            "acceptance_criteria": it.get("acceptanceCriteria"),
            "test_type": it.get("testType"),
        }
        for it in blob.get("checklistItems", [])
    ]
    return SnapshotView(
        template={
            "id": blob.get("id"),
            "name": blob.get("name"),
            "description": blob.get("description") or "",
            "activity_type": blob.get("activityType"),
        },
        items=sorted(items, key=lambda i: i["sequence_number"]),
        schema_version=0,
    )


def _read_v1(blob: dict) -> SnapshotView:
    return SnapshotView(
        template=dict(blob["template"]),
        items=[dict(it) for it in blob["items"]],
        schema_version=1,
        captured_at=blob.get("captured_at"),
    )


_READERS = {
    0: _read_v0,
    1: _read_v1,
}


def parse_snapshot(blob: dict) -> SnapshotView:
    version = blob.get("schema_version", 0)
    reader = _READERS.get(version)
    if reader is None:
        raise ValueError(f"Unsupported inspection snapshot schema_version={version}")
    return reader(blob)


def _live_template_view(template: InspectionTemplate | None) -> SnapshotView:
    if template is None:
        return SnapshotView(template={}, items=[], source=SOURCE_LIVE_TEMPLATE, schema_version=None)
    blob = build_snapshot(template)
    return SnapshotView(
        template=blob["template"],
        items=blob["items"],
        source=SOURCE_LIVE_TEMPLATE,
        schema_version=None,
    )


def read_snapshot(instance: InspectionInstance) -> SnapshotView:
    """Checklist structure an instance is inspected against."""
    if instance.snapshot is not None:
        return parse_snapshot(instance.snapshot)

    # Instance created before snapshotting: read the live template
    logger.info(
        "Inspection instance %s has no snapshot, reading live template %s",
        instance.id, instance.template_id,
        extra={"work_unit_id": instance.work_unit_id, "event_type": "snapshot.live_fallback"},
    )
    return _live_template_view(instance.template)


def with_point_flags(item: dict) -> dict:
    point_type = item.get("point_type")
    return {
        **item,
        "is_hold_point": point_type == "hold",
        "is_witness_point": point_type == "witness",
        "is_standard_point": point_type == "standard",
    }
