"""Central lifecycle status reference used by help/status reporting."""

from __future__ import annotations

from typing import Any

STATUS_REFERENCE_SCHEMA = "status_reference_v1"

TASK_STATUS_LIFECYCLE = [
    {
        "status": "pending",
        "meaning": "Unchecked item with no progress keyword in its text or status cell.",
        "typical_transitions": ["in_progress", "blocked", "done"],
    },
    {
        "status": "in_progress",
        "meaning": "Text or status cell mentions progress, doing or active.",
        "typical_transitions": ["blocked", "done", "pending"],
    },
    {
        "status": "blocked",
        "meaning": "Text or status cell mentions a block.",
        "typical_transitions": ["in_progress", "pending"],
    },
    {
        "status": "done",
        "meaning": "Checkbox ticked, or status cell says done/complete.",
        "typical_transitions": ["pending"],
    },
]

BACKLOG_STATUS_LIFECYCLE = [
    {
        "status": "captured",
        "meaning": "Idea recorded but not yet looked at (default, or captured/queue keyword).",
        "typical_transitions": ["triaged", "archived"],
    },
    {
        "status": "triaged",
        "meaning": "Reviewed or being worked on (triage, progress, doing, active).",
        "typical_transitions": ["prioritized", "archived"],
    },
    {
        "status": "prioritized",
        "meaning": "Ranked for upcoming work.",
        "typical_transitions": ["promoted", "archived"],
    },
    {
        "status": "promoted",
        "meaning": "Turned into a task.",
        "typical_transitions": ["archived"],
    },
    {
        "status": "archived",
        "meaning": "Checkbox ticked or archived; no further action.",
        "typical_transitions": ["captured"],
    },
]

CONNECTOR_STATUS_LIFECYCLE = [
    {
        "status": "active",
        "meaning": "Syncs run and write back normally; every successful sync restores it.",
        "typical_transitions": ["paused", "error"],
    },
    {
        "status": "paused",
        "meaning": "Skipped by sync-all and graded red until reactivated.",
        "typical_transitions": ["active"],
    },
    {
        "status": "error",
        "meaning": "The last background sync failed.",
        "typical_transitions": ["active"],
    },
]

SEVERITY_LEVELS = [
    {
        "status": "red",
        "meaning": (
            "Connector not active, heartbeat missing or older than 7x the threshold,"
            " duplicate source_ids, or synced records without a source_id."
        ),
        "typical_transitions": ["yellow", "green"],
    },
    {
        "status": "yellow",
        "meaning": "Heartbeat older than the threshold, absolute source_ids, or duplicate titles.",
        "typical_transitions": ["green", "red"],
    },
    {
        "status": "green",
        "meaning": "Recent heartbeat and clean synced records.",
        "typical_transitions": ["yellow", "red"],
    },
]

STATUS_LIFECYCLES = [
    {
        "type": "task",
        "label": "Task lifecycle",
        "description": "Statuses parsed from tasks files.",
        "statuses": TASK_STATUS_LIFECYCLE,
    },
    {
        "type": "backlog",
        "label": "Backlog lifecycle",
        "description": "Statuses parsed from backlog files.",
        "statuses": BACKLOG_STATUS_LIFECYCLE,
    },
    {
        "type": "connector",
        "label": "Connector lifecycle",
        "description": "Statuses of a project's sync connector.",
        "statuses": CONNECTOR_STATUS_LIFECYCLE,
    },
    {
        "type": "sync_quality",
        "label": "Sync quality severity",
        "description": "Grades assigned by the sync quality report.",
        "statuses": SEVERITY_LEVELS,
    },
]


def get_status_reference() -> dict[str, Any]:
    """Return a machine-parseable lifecycle reference payload."""
    return {
        "schema": STATUS_REFERENCE_SCHEMA,
        "lifecycles": [
            {
                "type": lifecycle["type"],
                "label": lifecycle["label"],
                "description": lifecycle["description"],
                "statuses": [
                    {
                        "status": status["status"],
                        "meaning": status["meaning"],
                        "typical_transitions": list(status["typical_transitions"]),
                    }
                    for status in lifecycle["statuses"]
                ],
            }
            for lifecycle in STATUS_LIFECYCLES
        ],
    }
